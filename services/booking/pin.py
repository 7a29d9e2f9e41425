"""
services/booking/pin.py
Completion PIN: a 6-digit code derived from booking identity + creation time.

Nothing is stored. The customer is shown the PIN, hands it to the provider once
the job is done, and the server re-derives it to verify. This is a deterrent
against premature self-completion, not an access-control boundary.
"""

import hmac
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from config.settings import settings

PIN_LENGTH = 6
PIN_MODULUS = 10 ** PIN_LENGTH
SENTINEL_PIN = "*" * PIN_LENGTH


def canonical_created_at(created_at: Union[str, datetime, None]) -> str:
    """Stable text form of created_at. Naive datetimes are taken as UTC."""
    if created_at is None:
        return ""
    if isinstance(created_at, str):
        return created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at.astimezone(timezone.utc).isoformat()


def _utf16_units(text: str):
    data = text.encode("utf-16-be")
    for i in range(0, len(data), 2):
        yield (data[i] << 8) | data[i + 1]


def string_hash(text: str) -> int:
    """31-multiplier rolling hash over UTF-16 code units, wrapped to signed 32-bit."""
    h = 0
    for unit in _utf16_units(text):
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    return h - (1 << 32) if h & 0x80000000 else h


def derive_pin(
    booking_id: Union[str, UUID, None],
    created_at: Union[str, datetime, None],
    secret: Optional[str] = None,
) -> str:
    booking_key = str(booking_id) if booking_id else ""
    created_key = canonical_created_at(created_at)
    if not booking_key or not created_key:
        return SENTINEL_PIN

    seed = booking_key + created_key + (settings.COMPLETION_PIN_SECRET if secret is None else secret)
    return str(abs(string_hash(seed)) % PIN_MODULUS).zfill(PIN_LENGTH)


def verify_pin(
    booking_id: Union[str, UUID, None],
    created_at: Union[str, datetime, None],
    candidate: Optional[str],
    secret: Optional[str] = None,
) -> bool:
    expected = derive_pin(booking_id, created_at, secret)
    if expected == SENTINEL_PIN or candidate is None:
        return False
    return hmac.compare_digest(candidate.encode(), expected.encode())
