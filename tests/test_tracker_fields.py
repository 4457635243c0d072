from datetime import datetime, timedelta, timezone

import pytest

from tracker_fields import (
    FIELD_KEYS,
    TIMED_FLAG_COLUMN,
    CoreStatus,
    DailyStatus,
    GoldenGoose,
    OutskirtsStatus,
    WtpStatus,
    coerce_value,
    decode_state,
    default_values,
    encode_state,
    expiry_label,
    is_expired,
)

T = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_field_keys_are_in_display_order():
    assert FIELD_KEYS == ("daily", "wtp", "sdn_outskirts", "sdn_core", "golden_goose")


@pytest.mark.parametrize(
    "field, raw, expected",
    [
        ("daily", "In Progress", DailyStatus.IN_PROGRESS),
        ("daily", "in_progress", DailyStatus.IN_PROGRESS),
        ("wtp", "available", WtpStatus.AVAILABLE),
        ("sdn_core", "Skipped", CoreStatus.SKIPPED),
        ("golden_goose", True, GoldenGoose.ACTIVE),
        ("golden_goose", False, GoldenGoose.INACTIVE),
        ("golden_goose", GoldenGoose.ACTIVE, GoldenGoose.ACTIVE),
    ],
)
def test_coerce_value_accepts_labels_codes_and_members(field, raw, expected):
    assert coerce_value(field, raw) is expected


def test_coerce_value_keeps_shared_labels_apart():
    assert coerce_value("sdn_outskirts", "Cleared") is OutskirtsStatus.CLEARED
    assert coerce_value("sdn_core", "Cleared") is CoreStatus.CLEARED
    with pytest.raises(ValueError):
        coerce_value("sdn_outskirts", CoreStatus.CLEARED)


def test_coerce_value_rejects_bad_input():
    with pytest.raises(ValueError):
        coerce_value("daily", "Finished")
    with pytest.raises(ValueError):
        coerce_value("wtp", True)
    with pytest.raises(KeyError):
        coerce_value("nightmare", "Cleared")


def test_decode_state_defaults_when_missing():
    values, activated_at = decode_state(None)
    assert values == default_values()
    assert activated_at is None


def test_decode_state_reads_stored_row():
    values, activated_at = decode_state(
        {
            "daily_status": "completed",
            "wtp": "cleared",
            "sdn_outskirts": "skipped",
            "sdn_core": "bogus",
            "golden_active": True,
            TIMED_FLAG_COLUMN: "2024-05-01T12:00:00Z",
        }
    )
    assert values["daily"] is DailyStatus.COMPLETED
    assert values["wtp"] is WtpStatus.CLEARED
    assert values["sdn_outskirts"] is OutskirtsStatus.SKIPPED
    assert values["sdn_core"] is CoreStatus.NOT_STARTED
    assert values["golden_goose"] is GoldenGoose.ACTIVE
    assert activated_at == T


def test_decode_state_drops_timestamp_for_inactive_flag():
    _, activated_at = decode_state({"golden_active": False, TIMED_FLAG_COLUMN: T})
    assert activated_at is None


def test_encode_state_writes_every_column():
    values = default_values()
    values["golden_goose"] = GoldenGoose.ACTIVE
    record = encode_state(values, T)
    assert record == {
        "daily_status": "not_started",
        "wtp": "locked",
        "sdn_outskirts": "not_started",
        "sdn_core": "not_started",
        "golden_active": True,
        TIMED_FLAG_COLUMN: T,
    }


def test_timed_flag_expiry_window():
    assert not is_expired(T, T + timedelta(days=6))
    assert not is_expired(T, T + timedelta(days=7))
    assert is_expired(T, T + timedelta(days=7, seconds=1))
    assert not is_expired(None, T + timedelta(days=30))


def test_expiry_label():
    assert expiry_label(None, T) == "--"
    assert expiry_label(T, T + timedelta(days=6)) == "1 day left (2024-05-08)"
    assert expiry_label(T, T + timedelta(days=2)) == "5 days left (2024-05-08)"
    assert expiry_label(T, T + timedelta(days=8)) == "Expired (2024-05-08)"
