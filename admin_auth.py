# ==============================================================================
# ADMIN CREDENTIAL CHECK
# ==============================================================================

# --- Standard Library Imports ---
import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

# --- Third-Party Imports ---
from pydantic import BaseModel

logger = logging.getLogger(__name__)

QUOTE_CHARS = ('"', "'")


class LoginOutcome(Enum):
    """Result of an admin login attempt, paired with its HTTP status."""

    AUTHORIZED = 200
    BAD_REQUEST = 400
    REJECTED = 401
    MISCONFIGURED = 500

    @property
    def status_code(self) -> int:
        return self.value


LOGIN_ERRORS = {
    LoginOutcome.BAD_REQUEST: "Missing email or password",
    LoginOutcome.REJECTED: "Invalid email or password",
    LoginOutcome.MISCONFIGURED: (
        "Server admin env vars not configured correctly (ADMIN_EMAILS / ADMIN_PASSWORDS)."
    ),
}


def normalize_value(raw: str) -> str:
    """
    Trims surrounding whitespace and one matching pair of quote characters.

    Args:
        raw (str): A value as it appears in the environment or a request.

    Returns:
        str: The cleaned value, e.g. ' "a@x.com" ' -> 'a@x.com'.
    """
    value = (raw or "").strip()
    if len(value) >= 2 and value[0] in QUOTE_CHARS and value[-1] == value[0]:
        value = value[1:-1]
    return value


def parse_csv(raw: str) -> tuple:
    """Splits a comma-separated environment value into normalized, non-empty items."""
    items = (normalize_value(part) for part in normalize_value(raw).split(","))
    return tuple(item for item in items if item)


@dataclass(frozen=True)
class AdminCredentials:
    """
    Parallel lists of admin emails and passwords. Position i of one list
    belongs to position i of the other.
    """

    emails: tuple = ()
    passwords: tuple = ()

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "AdminCredentials":
        return cls(
            emails=parse_csv(environ.get("ADMIN_EMAILS", "")),
            passwords=parse_csv(environ.get("ADMIN_PASSWORDS", "")),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.emails) and len(self.emails) == len(self.passwords)

    def index_of(self, email: str) -> int:
        wanted = email.lower()
        for idx, configured in enumerate(self.emails):
            if configured.lower() == wanted:
                return idx
        return -1


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


def parse_login_body(body) -> LoginRequest:
    """
    Turns an arbitrary decoded request body into a LoginRequest.

    Anything that is not a JSON object, and any field that is not a string,
    is treated as missing so the check below reports a bad request.
    """
    if not isinstance(body, dict):
        body = {}
    fields = {k: body.get(k) for k in ("email", "password") if isinstance(body.get(k), str)}
    parsed = LoginRequest(**fields)
    return LoginRequest(email=normalize_value(parsed.email).lower(), password=parsed.password)


def passwords_match(submitted: str, expected: str) -> bool:
    """
    Compares two passwords in time independent of where they first differ.

    When the lengths differ, the stored password is compared with itself so
    this path costs about the same as a same-length mismatch.
    """
    submitted_bytes = submitted.encode("utf-8")
    expected_bytes = expected.encode("utf-8")
    if len(submitted_bytes) != len(expected_bytes):
        hmac.compare_digest(expected_bytes, expected_bytes)
        return False
    return hmac.compare_digest(submitted_bytes, expected_bytes)


def check_admin_credentials(credentials: AdminCredentials, email: str, password: str) -> LoginOutcome:
    """
    Checks a submitted email/password pair against the configured admins.

    Args:
        credentials (AdminCredentials): The credential store built at start-up.
        email (str): Submitted email, already normalized and lowercased.
        password (str): Submitted password, verbatim.

    Returns:
        LoginOutcome: MISCONFIGURED whenever the store is broken, whatever
                      was submitted; otherwise BAD_REQUEST, REJECTED or
                      AUTHORIZED.
    """
    if not credentials.is_configured:
        logger.error(
            "Admin credentials misconfigured: %d emails, %d passwords",
            len(credentials.emails), len(credentials.passwords),
        )
        return LoginOutcome.MISCONFIGURED

    if not email or not password:
        return LoginOutcome.BAD_REQUEST

    idx = credentials.index_of(email)
    if idx == -1:
        return LoginOutcome.REJECTED

    if not passwords_match(password, credentials.passwords[idx]):
        return LoginOutcome.REJECTED
    return LoginOutcome.AUTHORIZED
