"""
Tests for the message store functions in app.storage.

These call the store directly with a Session (or a stand-in for one) to
cover behavior that is hard to reach over HTTP: validation before any
database access, commit failures, and rows that fail to decode.
"""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.errors import MessageValidationError, StorageError
from app.models import MessageRow, DeletedMessageRow
from app.schemas import Message
from app.storage import (
    MAX_PAGE_SIZE,
    clamp_limit,
    decode_rows,
    delete_message,
    get_deleted_message_ids,
    get_messages,
    insert_message,
)


def row_count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar()


def fail(*args, **kwargs):
    raise OperationalError("COMMIT", None, Exception("disk I/O error"))


def skipped_rows(table: str) -> float:
    return REGISTRY.get_sample_value("message_rows_skipped_total", {"table": table}) or 0.0


class TestMessageValidity:
    """Test the text validity predicate."""

    @pytest.mark.parametrize("text", ["a", " padded ", "x" * 2048, "émoji 🎉"])
    def test_valid_text(self, text):
        assert Message(text=text).is_valid()

    @pytest.mark.parametrize("text", ["", " ", "\t\n", "x" * 2049])
    def test_invalid_text(self, text):
        assert not Message(text=text).is_valid()


class TestClampLimit:
    """Test the page size policy."""

    def test_default(self):
        assert clamp_limit(None) == MAX_PAGE_SIZE

    def test_within_cap(self):
        assert clamp_limit(10) == 10

    def test_above_cap(self):
        assert clamp_limit(1000) == MAX_PAGE_SIZE

    def test_zero(self):
        assert clamp_limit(0) == 0

    def test_negative(self):
        assert clamp_limit(-5) == 0

    def test_zero_limit_gives_empty_page(self, db):
        insert_message(db, Message(text="hidden"))

        assert get_messages(db, limit=0) == []
        assert get_messages(db, from_server_id=0, limit=0) == []


class TestInsertMessage:
    """Test insert_message."""

    def test_insert_assigns_server_id(self, db):
        stored = insert_message(db, Message(text="hello"))

        assert stored.server_id is not None
        assert stored.text == "hello"
        assert row_count(db, MessageRow) == 1

    def test_client_server_id_is_replaced(self, db):
        stored = insert_message(db, Message(server_id=12345, text="hello"))

        assert stored.server_id != 12345

    def test_invalid_message_never_touches_session(self):
        """Test validation fails before any database access."""
        session = Mock(spec=Session)

        with pytest.raises(MessageValidationError):
            insert_message(session, Message(text=""))

        assert session.method_calls == []

    def test_commit_failure_raises_storage_error(self, db, monkeypatch):
        """Test a failed commit is reported and leaves no row behind."""
        monkeypatch.setattr(db, "commit", fail)

        with pytest.raises(StorageError) as exc_info:
            insert_message(db, Message(text="lost"))

        assert isinstance(exc_info.value.__cause__, OperationalError)
        monkeypatch.undo()
        assert row_count(db, MessageRow) == 0


class TestGetMessages:
    """Test get_messages."""

    def test_query_failure_raises_storage_error(self, db, monkeypatch):
        monkeypatch.setattr(db, "execute", fail)

        with pytest.raises(StorageError):
            get_messages(db)

    def test_undecodable_rows_are_skipped(self, db):
        """Test a stored row with invalid UTF-8 text is dropped, the rest returned."""
        insert_message(db, Message(text="good"))
        db.execute(text("INSERT INTO messages (text) VALUES (CAST(X'FF' AS TEXT))"))
        db.commit()
        insert_message(db, Message(text="also good"))
        before = skipped_rows("messages")

        latest = get_messages(db)
        forward = get_messages(db, from_server_id=0)

        assert [m.text for m in latest] == ["also good", "good"]
        assert [m.text for m in forward] == ["good", "also good"]
        assert skipped_rows("messages") == before + 2

    def test_modes_order_opposite_ways(self, db):
        stored = [insert_message(db, Message(text=t)) for t in ("a", "b", "c")]

        latest = get_messages(db)
        forward = get_messages(db, from_server_id=stored[0].server_id - 1)

        assert [m.text for m in latest] == ["c", "b", "a"]
        assert [m.text for m in forward] == ["a", "b", "c"]


class TestDeleteMessage:
    """Test delete_message."""

    def test_delete_reports_affected_rows(self, db):
        stored = insert_message(db, Message(text="bye"))

        assert delete_message(db, stored.server_id) == 1
        assert delete_message(db, stored.server_id) == 0
        assert row_count(db, DeletedMessageRow) == 1

    def test_delete_missing_id_logs_nothing(self, db):
        assert delete_message(db, 42) == 0
        assert row_count(db, DeletedMessageRow) == 0

    def test_commit_failure_rolls_back_both_tables(self, db, monkeypatch):
        """Test a failed commit leaves the message in place and unlogged."""
        stored = insert_message(db, Message(text="keep"))
        monkeypatch.setattr(db, "commit", fail)

        with pytest.raises(StorageError):
            delete_message(db, stored.server_id)

        monkeypatch.undo()
        assert row_count(db, MessageRow) == 1
        assert row_count(db, DeletedMessageRow) == 0


class TestGetDeletedMessageIds:
    """Test get_deleted_message_ids."""

    def test_lists_deleted_ids(self, db):
        stored = [insert_message(db, Message(text=t)) for t in ("a", "b", "c")]
        for message in stored[:2]:
            delete_message(db, message.server_id)

        assert get_deleted_message_ids(db) == [stored[1].server_id, stored[0].server_id]
        assert get_deleted_message_ids(db, from_server_id=stored[0].server_id) == [stored[1].server_id]

    def test_query_failure_raises_storage_error(self, db, monkeypatch):
        monkeypatch.setattr(db, "execute", fail)

        with pytest.raises(StorageError):
            get_deleted_message_ids(db)

    def test_undecodable_rows_are_skipped(self, db):
        """Test a log entry that is not an integer is dropped, the rest returned."""
        stored = [insert_message(db, Message(text=t)) for t in ("a", "b")]
        delete_message(db, stored[0].server_id)
        db.execute(text("INSERT INTO deleted_messages (id) VALUES ('seven')"))
        db.commit()
        delete_message(db, stored[1].server_id)
        before = skipped_rows("deleted_messages")

        ids = get_deleted_message_ids(db)

        assert ids == [stored[1].server_id, stored[0].server_id]
        assert skipped_rows("deleted_messages") == before + 1

    def test_ordered_by_deletion_not_by_id(self, db):
        """Test the newest deletion comes first even when it has the smaller id."""
        a, b = [insert_message(db, Message(text=t)) for t in ("a", "b")]
        delete_message(db, b.server_id)
        delete_message(db, a.server_id)

        assert get_deleted_message_ids(db, limit=1) == [a.server_id]
        assert get_deleted_message_ids(db) == [a.server_id, b.server_id]
        assert get_deleted_message_ids(db, from_server_id=0) == [b.server_id, a.server_id]

    def test_cursor_sees_later_deletion_of_older_message(self, db):
        """Test a sync cursor at a deleted id returns deletions logged after it."""
        a, b = [insert_message(db, Message(text=t)) for t in ("a", "b")]
        delete_message(db, b.server_id)
        first_page = get_deleted_message_ids(db, from_server_id=0)
        delete_message(db, a.server_id)

        assert first_page == [b.server_id]
        assert get_deleted_message_ids(db, from_server_id=first_page[-1]) == [a.server_id]
        assert get_deleted_message_ids(db, from_server_id=a.server_id) == []

    def test_id_is_logged_at_most_once(self, db):
        stored = insert_message(db, Message(text="once"))
        delete_message(db, stored.server_id)
        db.add(DeletedMessageRow(id=stored.server_id))

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

        assert get_deleted_message_ids(db) == [stored.server_id]


class TestDecodeRows:
    """Test decode_rows on plain rows."""

    def test_counts_skipped_rows(self):
        rows = [SimpleNamespace(id=1, text="ok"), SimpleNamespace(id=2, text=None)]

        items, skipped = decode_rows(
            rows,
            lambda row: Message(server_id=row.id, text=row.text),
            "messages",
        )

        assert items == [Message(server_id=1, text="ok")]
        assert skipped == 1

    def test_non_validation_errors_propagate(self):
        def explode(row):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            decode_rows([SimpleNamespace(id=1)], explode, "messages")
