"""
Input normalisation helpers shared by the service layer.
"""

import re
from datetime import date, datetime
from typing import Iterable, List, Optional

from oldmanfooty.database.models import AUSTRALIAN_STATES
from oldmanfooty.services.errors import ValidationError
from oldmanfooty.utils.datetime_utils import ensure_utc

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# E.164-ish or local Australian formats: optional +, digits and spaces, 8-15 digits
_PHONE_RE = re.compile(r"^\+?[\d ]{8,20}$")


def clean_str(value: Optional[str]) -> Optional[str]:
    """Strip whitespace; empty strings become None."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def normalize_email(email: Optional[str]) -> Optional[str]:
    email = clean_str(email)
    return email.lower() if email else None


def require_email(email: Optional[str], field: str = "Email") -> str:
    """Normalise and validate an email address, raising ValidationError."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError(f"{field} is required")
    if len(normalized) > 254 or not _EMAIL_RE.match(normalized):
        raise ValidationError(f"{field} must be a valid email address")
    return normalized


def optional_email(email: Optional[str], field: str = "Email") -> Optional[str]:
    if clean_str(email) is None:
        return None
    return require_email(email, field)


def optional_phone(phone: Optional[str]) -> Optional[str]:
    phone = clean_str(phone)
    if phone is None:
        return None
    if not _PHONE_RE.match(phone):
        raise ValidationError("Invalid phone number format")
    return phone


def require_text(value: Optional[str], field: str, max_length: int = 200) -> str:
    value = clean_str(value)
    if not value:
        raise ValidationError(f"{field} is required")
    if len(value) > max_length:
        raise ValidationError(f"{field} must be {max_length} characters or fewer")
    return value


def validate_state(state: Optional[str], required: bool = False) -> Optional[str]:
    """Upper-case and check an Australian state code."""
    state = clean_str(state)
    if state is None:
        if required:
            raise ValidationError("State is required")
        return None
    state = state.upper()
    if state not in AUSTRALIAN_STATES:
        raise ValidationError(f"State must be one of: {', '.join(AUSTRALIAN_STATES)}")
    return state


def validate_states(states: Optional[Iterable[str]]) -> List[str]:
    """Non-empty, de-duplicated subset of the Australian state codes, in canonical order."""
    chosen = {validate_state(s, required=True) for s in (states or [])}
    if not chosen:
        raise ValidationError("Please select at least one state")
    return [s for s in AUSTRALIAN_STATES if s in chosen]


def validate_password(password: Optional[str]) -> str:
    if not password or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")
    return password


def parse_date(value, field: str) -> Optional[date]:
    """Accept a date, a datetime (date part) or an ISO ``YYYY-MM-DD`` string."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"{field} must be a valid date (YYYY-MM-DD)")


def parse_datetime(value, field: str) -> Optional[datetime]:
    """Accept a datetime or ISO-8601 string; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if not isinstance(value, datetime):
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"{field} must be a valid date and time")
    return ensure_utc(value)


def optional_positive_int(value, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a whole number")
    if number < 1:
        raise ValidationError(f"{field} must be at least 1")
    return number
