# ==============================================================================
# COMMISSION & PAYOUT REPORTING
# ==============================================================================

# --- Standard Library Imports ---
from datetime import datetime, timezone

COMMISSION_RATE = 0.20
PAYOUT_RATE = 1 - COMMISSION_RATE  # 0.8

PAYOUT_STATUSES = ("pending", "approved", "rejected")


def trip_split(amount) -> tuple:
    """
    Splits a trip fare into the platform commission and the driver earnings.

    Args:
        amount: Fare as stored on the trip (number or numeric string).

    Returns:
        tuple: (commission, earnings), each rounded to 2 decimals.
    """
    fare = to_amount(amount)
    commission = fare * COMMISSION_RATE
    return round(commission, 2), round(fare - commission, 2)


def payout_breakdown(net) -> dict:
    # Payout requests store the NET amount (80%) owed to the driver.
    net = to_amount(net)
    gross = net / PAYOUT_RATE
    return {
        "net": round(net, 2),
        "gross": round(gross, 2),
        "commission": round(gross * COMMISSION_RATE, 2),
    }


def to_amount(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def to_datetime(value):
    """Accepts a Firestore timestamp, a datetime or an ISO string."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def report_row(doc_id: str, data: dict) -> dict:
    ts = to_datetime(data.get("timestamp")) or datetime.now(timezone.utc)
    date_iso = ts.date().isoformat()
    bank_name = str(data.get("bankName") or data.get("bank") or "N/A")
    account_number = str(data.get("accountNumber") or "N/A")
    return {
        "id": doc_id,
        "driverId": str(data.get("driverId") or data.get("driver") or "—"),
        "dateISO": date_iso,
        "monthKey": date_iso[:7],
        "bankLine": f"{bank_name} - {account_number}",
        "accountName": str(data.get("accountName") or "N/A"),
        "iban": str(data.get("iban") or "N/A"),
        "status": data.get("status") or "pending",
        **payout_breakdown(data.get("amount")),
    }


def month_options(rows: list) -> list:
    months = sorted({row["monthKey"] for row in rows if row.get("monthKey")}, reverse=True)
    return ["all"] + months


def filter_rows(rows: list, month: str = "all", only_approved: bool = False) -> list:
    return [
        row for row in rows
        if (month == "all" or row["monthKey"] == month)
        and (not only_approved or row["status"] == "approved")
    ]


def report_totals(rows: list) -> dict:
    return {
        "count": len(rows),
        "net": round(sum(row["net"] for row in rows), 2),
        "gross": round(sum(row["gross"] for row in rows), 2),
        "commission": round(sum(row["commission"] for row in rows), 2),
    }
