# ==============================================================================
# EXPO PUSH NOTIFICATIONS
# ==============================================================================

# --- Standard Library Imports ---
import logging

# --- Third-Party Imports ---
import requests

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_CHUNK_SIZE = 90
REQUEST_TIMEOUT_SECONDS = 15

TOKEN_FIELDS = ("expoPushToken", "pushToken", "token", "notificationToken", "fcmToken")
TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[")

AUDIENCE_COLLECTIONS = {
    "users": ("users", "users_by_phone"),
    "drivers": ("drivers", "drivers_by_phone"),
}
AUDIENCES = ("all", "users", "drivers")


class PushError(Exception):
    """The push service rejected or never received a batch."""


def is_expo_token(value) -> bool:
    return isinstance(value, str) and value.startswith(TOKEN_PREFIXES)


def extract_tokens(doc: dict) -> list:
    """
    Collects every Expo push token stored on a user or driver document.

    Args:
        doc (dict): Document data. Token fields may hold a string or a list.

    Returns:
        list: Valid Expo tokens, in field order.
    """
    tokens = []
    for field in TOKEN_FIELDS:
        candidate = doc.get(field)
        if not candidate:
            continue
        values = candidate if isinstance(candidate, list) else [candidate]
        tokens.extend(str(v) for v in values if is_expo_token(v))
    return tokens


def collect_tokens(db, scope: str) -> list:
    """
    Gathers de-duplicated push tokens for an audience.

    The *_by_phone mirrors are optional; a failure reading them is logged
    and skipped.
    """
    if scope not in AUDIENCES:
        raise ValueError(f"Unknown audience: {scope}")

    groups = ["users", "drivers"] if scope == "all" else [scope]
    seen = {}
    for group in groups:
        primary, mirror = AUDIENCE_COLLECTIONS[group]
        for doc in db.collection(primary).stream():
            for token in extract_tokens(doc.to_dict() or {}):
                seen.setdefault(token, None)
        try:
            for doc in db.collection(mirror).stream():
                for token in extract_tokens(doc.to_dict() or {}):
                    seen.setdefault(token, None)
        except Exception as e:
            logger.warning(f"Skipping optional collection {mirror}: {e}")
    return list(seen)


def send_push(tokens: list, title: str, body: str, data: dict = None) -> int:
    """
    Sends one message per token to the Expo push service in chunks.

    Returns:
        int: Number of messages submitted.

    Raises:
        PushError: A chunk could not be delivered to the push service.
    """
    sent = 0
    for start in range(0, len(tokens), EXPO_CHUNK_SIZE):
        chunk = tokens[start:start + EXPO_CHUNK_SIZE]
        messages = [
            {
                "to": token,
                "title": title,
                "body": body,
                "data": data or {},
                "channelId": "default",
                "priority": "high",
            }
            for token in chunk
        ]
        try:
            response = requests.post(
                EXPO_PUSH_URL,
                json=messages,
                headers={"Accept": "application/json", "Accept-Encoding": "gzip, deflate"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise PushError(f"Expo push failed after {sent} messages: {e}") from e
        sent += len(chunk)
    logger.info("Submitted %d push messages", sent)
    return sent


def notify_token(token: str, title: str, body: str) -> bool:
    """Best-effort push to a single device; never raises."""
    if not is_expo_token(token):
        return False
    try:
        send_push([token], title, body)
        return True
    except PushError as e:
        logger.error(f"Push to single device failed: {e}", exc_info=True)
        return False
