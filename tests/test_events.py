from datetime import datetime, timezone

import pytest

from shared.chat.events import (
    UNKNOWN_AUTHOR,
    InvalidPayload,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
    decode_change,
    format_timestamp,
    message_from_row,
    parse_timestamp,
)

from conftest import chat_row, change


def test_parse_timestamp_accepts_backend_formats():
    expected = datetime(2026, 10, 19, 12, 0, 0, 123456, tzinfo=timezone.utc)

    assert parse_timestamp("2026-10-19T12:00:00.123456Z") == expected
    assert parse_timestamp("2026-10-19T12:00:00.123456+00:00") == expected
    assert parse_timestamp("2026-10-19 12:00:00.123456789+00:00") == expected
    assert parse_timestamp("2026-10-19T14:00:00.123456+02:00") == expected


def test_parse_timestamp_epoch_and_naive():
    assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(1_700_000_000_000) == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
    assert parse_timestamp(datetime(2026, 1, 1)).tzinfo is not None


@pytest.mark.parametrize("value", [None, "", "not a date", object()])
def test_parse_timestamp_rejects_garbage(value):
    with pytest.raises(InvalidPayload):
        parse_timestamp(value)


def test_format_timestamp_uses_z_suffix():
    value = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    assert format_timestamp(value) == "2026-10-19T12:00:00Z"


def test_message_from_row_embeds_profile():
    message = message_from_row(chat_row("m1", offset=0, username="alice"))

    assert message.id == "m1"
    assert message.author.username == "alice"
    assert message.author.initial == "A"
    assert message.is_deleted is False


def test_message_from_row_without_profile_is_unknown():
    message = message_from_row(chat_row("m1", offset=0))
    assert message.author is UNKNOWN_AUTHOR
    assert message.author.username == "Unknown"


def test_message_from_row_reads_legacy_content_column():
    row = chat_row("m1", offset=0)
    del row["message"]
    row["content"] = "hello"
    assert message_from_row(row).message == "hello"


def test_message_from_row_requires_ids():
    row = chat_row("m1", offset=0)
    row["user_id"] = None
    with pytest.raises(InvalidPayload):
        message_from_row(row)


def test_decode_insert_update_delete():
    inserted = decode_change(change("INSERT", chat_row("m1", offset=0)))
    assert isinstance(inserted, MessageInserted)
    assert inserted.message.id == "m1"

    updated = decode_change(change("UPDATE", chat_row("m1", offset=0, is_deleted=True)))
    assert isinstance(updated, MessageUpdated)
    assert updated.soft_deleted

    deleted = decode_change(change("DELETE", old={"id": "m1"}))
    assert deleted == MessageDeleted(message_id="m1")


def test_decode_flattened_shape():
    event = decode_change({"eventType": "INSERT", "new": chat_row("m2", offset=1), "old": {}})
    assert isinstance(event, MessageInserted)
    assert event.message.id == "m2"


def test_decode_rejects_unknown_types():
    with pytest.raises(InvalidPayload):
        decode_change(change("TRUNCATE"))
    with pytest.raises(InvalidPayload):
        decode_change(change("DELETE", old={}))
    with pytest.raises(InvalidPayload):
        decode_change(["not", "a", "dict"])
