"""
tests/test_pin.py
Completion PIN derivation and verification.
"""

from datetime import datetime, timedelta, timezone

from services.booking.pin import (
    SENTINEL_PIN,
    canonical_created_at,
    derive_pin,
    string_hash,
    verify_pin,
)

CREATED_AT = "2024-01-01T00:00:00Z"
SALT = "LOCAL_SERVICES_COMPLETION_SALT"


def test_known_example_is_stable():
    """A fixed input always produces the same PIN, across runs and releases."""
    assert derive_pin("b1", CREATED_AT, secret=SALT) == "843585"
    assert derive_pin("b1", CREATED_AT, secret="") == "964075"


def test_string_hash_wraps_to_signed_32_bit():
    assert string_hash("") == 0
    assert string_hash("a") == 97
    assert string_hash("b12024-01-01T00:00:00Z") == -698964075


def test_derive_is_deterministic():
    assert derive_pin("b1", CREATED_AT) == derive_pin("b1", CREATED_AT)


def test_changing_either_input_changes_pin():
    base = derive_pin("b1", CREATED_AT)
    assert derive_pin("b2", CREATED_AT) != base
    assert derive_pin("b1", "2024-01-01T00:00:01Z") != base


def test_pin_is_six_ascii_digits():
    for i in range(200):
        pin = derive_pin(f"booking-{i}", f"2024-03-{(i % 28) + 1:02d}T10:00:00Z")
        assert len(pin) == 6
        assert pin.isascii() and pin.isdigit()


def test_missing_inputs_yield_sentinel_that_never_verifies():
    assert derive_pin("", CREATED_AT) == SENTINEL_PIN
    assert derive_pin("b1", None) == SENTINEL_PIN
    assert derive_pin(None, "") == SENTINEL_PIN
    assert verify_pin("", CREATED_AT, SENTINEL_PIN) is False
    assert verify_pin("b1", None, SENTINEL_PIN) is False


def test_verify_accepts_only_the_derived_pin():
    pin = derive_pin("b1", CREATED_AT)
    assert verify_pin("b1", CREATED_AT, pin) is True
    wrong = str((int(pin) + 1) % 1_000_000).zfill(6)
    assert verify_pin("b1", CREATED_AT, wrong) is False
    assert verify_pin("b1", CREATED_AT, None) is False


def test_naive_and_aware_timestamps_agree():
    """Databases that drop tzinfo must not change the PIN."""
    aware = datetime(2024, 5, 1, 9, 30, 15, 123456, tzinfo=timezone.utc)
    naive = aware.replace(tzinfo=None)
    ist = aware.astimezone(timezone(timedelta(hours=5, minutes=30)))

    assert canonical_created_at(naive) == canonical_created_at(aware)
    assert canonical_created_at(ist) == canonical_created_at(aware)
    assert derive_pin("b1", naive) == derive_pin("b1", aware)
