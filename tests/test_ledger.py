"""
Tests for the pending action ledger
"""
import time
from datetime import datetime, timedelta, timezone

import pytest

from inbox_assistant.errors import ShortIdCollisionError
from inbox_assistant.ledger import PENDING_EMAIL_DISCARDED, PENDING_EMAIL_RESOLVED, PendingActionLedger
from inbox_assistant.models import PendingActionStatus


@pytest.fixture
def ledger(db):
    return PendingActionLedger(db)


def create_action(ledger, email_id="m1", short_id=None):
    """Helper to record a drafted reply"""
    return ledger.create_pending_action(
        email_id=email_id,
        proposed_body="Thanks! The back room is free on Friday.",
        recipient="guest@example.com",
        subject="Re: Booking inquiry",
        thread_id="t-m1",
        in_reply_to="<m1@example.com>",
        short_id=short_id,
    )


class TestCreatePendingAction:
    """Test creating entries and allocating short ids"""

    def test_explicit_short_id(self, ledger):
        short_id = create_action(ledger, short_id="1ABC")

        assert short_id == "1abc"
        action = ledger.get_open_action("1abc")
        assert action.email_id == "m1"
        assert action.recipient == "guest@example.com"
        assert action.subject == "Re: Booking inquiry"
        assert action.thread_id == "t-m1"
        assert action.in_reply_to == "<m1@example.com>"
        assert action.status == PendingActionStatus.CREATED

    def test_lookup_case_insensitive(self, ledger):
        create_action(ledger, short_id="1abc")

        assert ledger.get_open_action("1ABC") is not None

    def test_explicit_short_id_collision(self, ledger):
        create_action(ledger, short_id="1abc")

        with pytest.raises(ShortIdCollisionError):
            create_action(ledger, email_id="m2", short_id="1abc")

        assert ledger.get_open_action("1abc").email_id == "m1"

    def test_invalid_explicit_short_id(self, ledger):
        with pytest.raises(ValueError):
            create_action(ledger, short_id="1a-c")

    def test_generated_short_id_format(self, ledger):
        short_id = create_action(ledger)

        assert len(short_id) == PendingActionLedger.SHORT_ID_LENGTH
        assert all(c in PendingActionLedger.SHORT_ID_ALPHABET for c in short_id)
        assert ledger.get_open_action(short_id) is not None

    def test_generated_short_ids_unique_among_open(self, ledger):
        short_ids = {create_action(ledger, email_id=f"m{i}") for i in range(50)}

        assert len(short_ids) == 50
        assert ledger.count_open() == 50

    def test_short_id_widens_when_crowded(self, ledger, monkeypatch):
        create_action(ledger, short_id="aaaa")
        monkeypatch.setattr("inbox_assistant.ledger.secrets.choice", lambda alphabet: "a")

        short_id = create_action(ledger, email_id="m2")

        assert short_id == "aaaaa"


class TestClaimAndResolve:
    """Test the open, claimed and closed lifecycle"""

    def test_claim_succeeds_once(self, ledger):
        create_action(ledger, short_id="1abc")

        assert ledger.claim("1abc") is True
        assert ledger.claim("1abc") is False

    def test_claimed_action_not_open(self, ledger):
        create_action(ledger, short_id="1abc")
        ledger.claim("1abc")

        assert ledger.get_open_action("1abc") is None
        assert ledger.list_open_actions() == []

    def test_release_reopens(self, ledger):
        create_action(ledger, short_id="1abc")
        action = ledger.get_open_action("1abc")
        ledger.claim("1abc")

        ledger.release(action)

        assert ledger.get_open_action("1abc") is not None
        assert ledger.claim("1abc") is True

    def test_mark_resolved_frees_short_id(self, ledger):
        create_action(ledger, short_id="1abc")
        action = ledger.get_open_action("1abc")
        ledger.claim("1abc")

        ledger.mark_resolved(action, "yes", "sent-1")

        assert ledger.get_open_action("1abc") is None
        assert ledger.count_open() == 0
        # The id can be bound again once closed
        assert create_action(ledger, email_id="m2", short_id="1abc") == "1abc"

    def test_mark_resolved_records_history(self, ledger):
        create_action(ledger, short_id="1abc")
        action = ledger.get_open_action("1abc")

        ledger.mark_resolved(action, "edit", "sent-1")

        entries = ledger.get_entries(PENDING_EMAIL_RESOLVED)
        assert len(entries) == 1
        assert entries[0].data["emailId"] == "m1"
        assert entries[0].data["command"] == "edit"
        assert entries[0].data["sentMessageId"] == "sent-1"
        pending = ledger.get_entries("pendingEmailResponse")
        assert pending[0].data["status"] == PendingActionStatus.RESOLVED.value

    def test_discard(self, ledger):
        create_action(ledger, short_id="1abc")
        action = ledger.get_open_action("1abc")

        ledger.discard(action, "Notification failed")

        assert ledger.get_open_action("1abc") is None
        entries = ledger.get_entries(PENDING_EMAIL_DISCARDED)
        assert entries[0].data["reason"] == "Notification failed"
        pending = ledger.get_entries("pendingEmailResponse")
        assert pending[0].data["status"] == PendingActionStatus.DISCARDED.value

    def test_list_open_actions_newest_first(self, ledger):
        create_action(ledger, email_id="m1", short_id="aaa1")
        create_action(ledger, email_id="m2", short_id="aaa2")

        assert [a.short_id for a in ledger.list_open_actions()] == ["aaa2", "aaa1"]


class TestHistoryEntries:
    """Test the append-only history"""

    def test_add_and_filter_entries(self, ledger):
        ledger.add_entry("sendSMS", to="+15551234567", messageLength=12)
        ledger.add_entry("sendEmail_failed", shortId="1abc", error="boom")
        ledger.add_entry("sendSMS", to="+15551234567", messageLength=30)

        sms_entries = ledger.get_entries("sendSMS")

        assert [e.data["messageLength"] for e in sms_entries] == [12, 30]
        assert len(ledger.get_entries()) == 3

    def test_limit_keeps_most_recent(self, ledger):
        for i in range(5):
            ledger.add_entry("sendSMS", index=i)

        entries = ledger.get_entries("sendSMS", limit=2)

        assert [e.data["index"] for e in entries] == [3, 4]

    def test_time_range_filter(self, ledger):
        ledger.add_entry("sendSMS", index=0)
        time.sleep(0.01)
        mark = datetime.now(timezone.utc)
        time.sleep(0.01)
        ledger.add_entry("sendSMS", index=1)

        after = ledger.get_entries("sendSMS", since=mark)
        before = ledger.get_entries("sendSMS", until=mark)

        assert [e.data["index"] for e in after] == [1]
        assert [e.data["index"] for e in before] == [0]

    def test_wide_window_and_future_bound(self, ledger):
        ledger.add_entry("sendSMS", index=0)
        now = datetime.now(timezone.utc)

        inside = ledger.get_entries(since=now - timedelta(minutes=1), until=now + timedelta(minutes=1))
        future = ledger.get_entries(since=now + timedelta(minutes=1))

        assert [e.data["index"] for e in inside] == [0]
        assert future == []

    def test_naive_bounds_taken_as_utc(self, ledger):
        ledger.add_entry("sendSMS", index=0)
        naive_now = datetime.now(timezone.utc).replace(tzinfo=None)

        assert len(ledger.get_entries(since=naive_now - timedelta(minutes=1))) == 1
        assert ledger.get_entries(until=naive_now - timedelta(minutes=1)) == []

    def test_pending_entry_carries_short_id(self, ledger):
        create_action(ledger, short_id="1abc")

        entry = ledger.get_entries("pendingEmailResponse")[0]

        assert entry.data["shortId"] == "1abc"
        assert entry.data["proposedEmail"].startswith("Thanks!")
