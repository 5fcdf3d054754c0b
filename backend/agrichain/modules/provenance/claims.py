"""
Typed inputs for provenance operations and their pure validation rules.

Validation never raises: each ``validate_*`` function returns a
``ValidationResult`` listing every problem found, and the caller decides
whether to turn it into a ``ValidationError``.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation

from agrichain.core.errors import ValidationError

SCHEMA_VERSION = "1.0"
DEFAULT_QUALITY = "Standard"

# Must fit the Numeric(18, 3) quantity column exactly
QUANTITY_DECIMAL_PLACES = 3
QUANTITY_LIMIT = Decimal(10) ** 15

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

_TEXT_LIMITS = {
    "producer_id": 50,
    "product": 100,
    "location": 200,
    "quality": 50,
}


@dataclass(frozen=True)
class ProvenanceClaim:
    """A producer's statement about a batch of goods."""

    producer_id: str
    product: str
    location: str
    event_date: str | date | datetime
    quantity: Decimal | int | float | str | None = None
    quality: str = DEFAULT_QUALITY
    notes: str | None = None
    recorded_at: str | None = None
    schema_version: str = SCHEMA_VERSION


@dataclass(frozen=True)
class ProducerInfo:
    """Optional profile used only when a producer row is created."""

    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    province: str | None = None
    district: str | None = None
    ward: str | None = None
    certification_level: str | None = DEFAULT_QUALITY
    wallet_address: str | None = None


@dataclass(frozen=True)
class FileUpload:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        self.valid = False
        self.errors.append(message)

    def raise_for_errors(self, message: str = "Invalid input") -> None:
        if not self.valid:
            raise ValidationError(message, errors=self.errors)


# ---------------------------------------------------------------------------
# Normalization shared by validation and hashing
# ---------------------------------------------------------------------------


def normalize_text(value: str) -> str:
    return unicodedata.normalize("NFC", value).strip()


def normalize_quantity(value: Decimal | int | float | str | None) -> str | None:
    """Return the canonical decimal string for a quantity, e.g. ``1000`` or ``12.5``."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("quantity must be a number")
    if isinstance(value, str) and not value.strip():
        return None
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError("quantity must be a number") from exc
    if not number.is_finite():
        raise ValueError("quantity must be finite")
    if number < 0:
        raise ValueError("quantity must not be negative")
    text = format(number.normalize(), "f")
    return "0" if text in ("-0", "") else text


def normalize_event_date(value: str | date | datetime) -> str:
    """Return ``YYYY-MM-DD`` for dates and a UTC ISO-8601 string for date-times."""
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise ValueError("event_date is required")
        if len(raw) == 10:
            return date.fromisoformat(raw).isoformat()
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=UTC)
        return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    raise ValueError("event_date must be a date")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_claim(claim: ProvenanceClaim) -> ValidationResult:
    result = ValidationResult()

    for name, limit in _TEXT_LIMITS.items():
        value = getattr(claim, name)
        if not isinstance(value, str) or not normalize_text(value):
            result.add(f"{name} is required")
        elif len(normalize_text(value)) > limit:
            result.add(f"{name} must be at most {limit} characters")

    if claim.event_date is None:
        result.add("event_date is required")
    else:
        try:
            normalize_event_date(claim.event_date)
        except (TypeError, ValueError):
            result.add("event_date must be a valid ISO-8601 date")

    try:
        quantity = normalize_quantity(claim.quantity)
    except ValueError as exc:
        result.add(str(exc))
    else:
        if quantity is not None:
            number = Decimal(quantity)
            if -int(number.as_tuple().exponent) > QUANTITY_DECIMAL_PLACES:
                result.add(
                    f"quantity must have at most {QUANTITY_DECIMAL_PLACES} decimal places"
                )
            if number >= QUANTITY_LIMIT:
                result.add(f"quantity must be less than {QUANTITY_LIMIT:f}")

    if claim.recorded_at is not None:
        try:
            datetime.fromisoformat(claim.recorded_at.replace("Z", "+00:00"))
        except (AttributeError, ValueError):
            result.add("recorded_at must be an ISO-8601 timestamp")

    if not claim.schema_version:
        result.add("schema_version is required")

    return result


def validate_producer_info(info: ProducerInfo | None) -> ValidationResult:
    result = ValidationResult()
    if info is None:
        return result
    if info.full_name is not None and len(info.full_name) > 100:
        result.add("full_name must be at most 100 characters")
    if info.email and not _EMAIL_RE.match(info.email):
        result.add("email is not a valid address")
    if info.phone is not None and len(info.phone) > 20:
        result.add("phone must be at most 20 characters")
    if info.wallet_address and not _WALLET_RE.match(info.wallet_address):
        result.add("wallet_address must be 0x followed by 40 hex characters")
    return result


def validate_uploads(
    files: Sequence[FileUpload] | None,
    *,
    max_files: int,
    max_bytes: int,
    allowed_types: Iterable[str],
) -> ValidationResult:
    result = ValidationResult()
    if not files:
        return result
    allowed = {item.lower() for item in allowed_types}
    if len(files) > max_files:
        result.add(f"At most {max_files} files may be attached")
    for index, upload in enumerate(files):
        label = upload.filename or f"file #{index + 1}"
        if not upload.filename:
            result.add(f"{label}: filename is required")
        if upload.size == 0:
            result.add(f"{label}: file is empty")
        elif upload.size > max_bytes:
            result.add(f"{label}: file exceeds {max_bytes} bytes")
        content_type = (upload.content_type or "").split(";")[0].strip().lower()
        if content_type not in allowed:
            result.add(f"{label}: content type {content_type or 'unknown'} is not allowed")
    return result
