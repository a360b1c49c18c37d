# ==============================================================================
# PROMO CODE FORM VALIDATION
# ==============================================================================

# --- Standard Library Imports ---
from datetime import datetime, timezone
from typing import Literal, Optional

# --- Third-Party Imports ---
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

MAX_LISTED_CODES = 200
CLEARABLE_FIELDS = ("percentOff", "amountOff", "expiresAt", "maxRedemptions", "perUserLimit", "minSubtotal")


class PromoCodeForm(BaseModel):
    """
    A promo code as submitted by the editor. Validation mirrors what the
    editor checks before any write reaches the store.
    """

    code: str = Field("", validate_default=True)
    active: bool = True
    type: Literal["percent", "flat"] = "percent"
    percentOff: Optional[float] = None
    amountOff: Optional[float] = None
    expiresAt: Optional[datetime] = None
    maxRedemptions: Optional[int] = None
    perUserLimit: Optional[int] = None
    minSubtotal: Optional[float] = None

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, value):
        code = str(value or "").strip().upper()
        if not code:
            raise ValueError("Enter code")
        return code

    @field_validator("percentOff", "amountOff", "maxRedemptions", "perUserLimit", "minSubtotal", mode="before")
    @classmethod
    def blank_is_unset(cls, value):
        if value == "":
            return None
        return value

    @field_validator("expiresAt", mode="before")
    @classmethod
    def end_of_day(cls, value):
        # Editor sends a bare date; the code stays valid through that whole day.
        if value in (None, ""):
            return None
        if isinstance(value, str) and len(value) == 10:
            try:
                day = datetime.strptime(value, "%Y-%m-%d")
            except ValueError:
                raise ValueError("Expiry must be a YYYY-MM-DD date")
            return day.replace(hour=23, minute=59, second=59, tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def check_discount(self):
        if self.type == "percent":
            pct = self.percentOff or 0
            if not (0 < pct <= 100):
                raise ValueError("Percent must be between 1 and 100")
            self.percentOff = round(pct, 2)
            self.amountOff = None
        else:
            amount = self.amountOff or 0
            if not amount > 0:
                raise ValueError("Amount must be > 0")
            self.amountOff = round(amount, 2)
            self.percentOff = None
        if self.minSubtotal is not None:
            self.minSubtotal = round(self.minSubtotal, 2)
        return self


def validation_message(error: ValidationError) -> str:
    """First human-readable message out of a pydantic error."""
    first = error.errors()[0]
    msg = first.get("msg", "Invalid promo code")
    # pydantic prefixes messages raised from validators
    return msg.removeprefix("Value error, ")


def promo_payload(form: PromoCodeForm) -> dict:
    """
    Builds the document written to the store. Unset optional values are
    omitted entirely; the store rejects undefined fields.
    """
    return form.model_dump(exclude_none=True)


def promo_update_payload(form: PromoCodeForm, delete_marker) -> dict:
    """
    Builds the partial update for an edited code. Optional fields the editor
    left blank, and the discount field of the other type, are written as
    `delete_marker` so no stale value survives on the document.
    """
    payload = promo_payload(form)
    for field in CLEARABLE_FIELDS:
        payload.setdefault(field, delete_marker)
    return payload


def filter_codes(rows: list, search: str) -> list:
    needle = (search or "").strip().upper()
    if not needle:
        return rows
    return [row for row in rows if needle in str(row.get("code", "")).upper()]
