"""
Pending action ledger

Append-only history of typed entries plus an index of open short ids. Every
AI-drafted reply waiting for approval is a 'pendingEmailResponse' entry bound
to exactly one short id while it is open; the binding is removed when the
entry is resolved or discarded, so the id can be reused later.
"""
import logging
import secrets
import string
from datetime import datetime
from typing import Any, List, Optional

from .database import DatabaseManager, HistoryEntryDB
from .errors import ShortIdCollisionError
from .models import HistoryEntry, PendingAction, PendingActionStatus

logger = logging.getLogger(__name__)

PENDING_EMAIL_RESOLVED = "pendingEmailResolved"
PENDING_EMAIL_DISCARDED = "pendingEmailDiscarded"


class PendingActionLedger:
    """Ledger of pending actions addressable by short id"""

    SHORT_ID_LENGTH = 4
    SHORT_ID_ALPHABET = string.ascii_lowercase + string.digits
    ATTEMPTS_PER_LENGTH = 10

    def __init__(self, db: DatabaseManager):
        self.db = db

    def generate_short_id(self) -> str:
        """
        Generate a short id not bound to any open entry.

        The token grows by one character whenever a length keeps colliding.
        """
        length = self.SHORT_ID_LENGTH
        while True:
            for _ in range(self.ATTEMPTS_PER_LENGTH):
                short_id = ''.join(secrets.choice(self.SHORT_ID_ALPHABET) for _ in range(length))
                if not self.db.short_id_in_use(short_id):
                    return short_id
            length += 1
            logger.warning(f"Short id space crowded, widening to {length} characters")

    def create_pending_action(
        self,
        email_id: str,
        proposed_body: str,
        recipient: str,
        subject: str,
        thread_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
        short_id: Optional[str] = None,
    ) -> str:
        """
        Record a drafted reply awaiting approval.

        Args:
            email_id: Message the reply answers
            proposed_body: Drafted reply text
            recipient: Address the reply goes to
            subject: Reply subject
            thread_id: Provider thread to reply in
            in_reply_to: Message-ID header of the message being answered
            short_id: Explicit short id; allocated when omitted

        Returns:
            The short id bound to the new entry

        Raises:
            ShortIdCollisionError: If an explicit short id is already open
            ValueError: If an explicit short id is not alphanumeric
        """
        data = {
            "emailId": email_id,
            "proposedEmail": proposed_body,
            "emailRecipient": recipient,
            "emailSubject": subject,
            "threadId": thread_id,
            "inReplyTo": in_reply_to,
        }

        if short_id is not None:
            short_id = short_id.lower()
            if not short_id.isalnum() or not short_id.isascii():
                raise ValueError(f"Short id must be alphanumeric: {short_id!r}")
            self.db.insert_pending_entry(short_id, data, PendingActionStatus.CREATED.value)
        else:
            while True:
                short_id = self.generate_short_id()
                try:
                    self.db.insert_pending_entry(short_id, data, PendingActionStatus.CREATED.value)
                    break
                except ShortIdCollisionError:
                    logger.warning(f"Short id {short_id} taken between check and insert, retrying")

        logger.info(f"Created pending action {short_id} for email {email_id}")
        return short_id

    def get_open_action(self, short_id: str) -> Optional[PendingAction]:
        """Get the open, unclaimed action for a short id (case-insensitive)"""
        row = self.db.get_open_pending_row(short_id.lower())
        return _row_to_action(row) if row else None

    def list_open_actions(self) -> List[PendingAction]:
        """Open actions, most recent first"""
        return [_row_to_action(row) for row in self.db.list_open_pending_rows()]

    def count_open(self) -> int:
        return self.db.count_open_short_ids()

    def claim(self, short_id: str) -> bool:
        """
        Claim an open action before executing its send.

        Returns:
            True for exactly one caller per open short id
        """
        return self.db.claim_short_id(short_id.lower())

    def release(self, action: PendingAction) -> None:
        """Return a claimed action to the open state after a failed send"""
        if self.db.release_short_id(action.short_id):
            logger.info(f"Released pending action {action.short_id}")
        else:
            logger.warning(f"Pending action {action.short_id} was not claimed")

    def mark_resolved(self, action: PendingAction, command: str, sent_message_id: Optional[str] = None) -> None:
        """Close an action whose reply was sent and free its short id"""
        self.db.set_entry_status(action.entry_id, PendingActionStatus.RESOLVED.value)
        self.db.remove_short_id(action.short_id)
        self.db.add_history_entry(
            PENDING_EMAIL_RESOLVED,
            {
                "emailId": action.email_id,
                "pendingEntryId": action.entry_id,
                "command": command,
                "sentMessageId": sent_message_id,
            },
            short_id=action.short_id,
        )
        logger.info(f"Resolved pending action {action.short_id} ({command})")

    def discard(self, action: PendingAction, reason: str) -> None:
        """Close an action that can no longer be approved"""
        self.db.set_entry_status(action.entry_id, PendingActionStatus.DISCARDED.value)
        self.db.remove_short_id(action.short_id)
        self.db.add_history_entry(
            PENDING_EMAIL_DISCARDED,
            {"emailId": action.email_id, "pendingEntryId": action.entry_id, "reason": reason},
            short_id=action.short_id,
        )
        logger.info(f"Discarded pending action {action.short_id}: {reason}")

    def add_entry(self, entry_type: str, **fields: Any) -> HistoryEntry:
        """Append a general history entry (e.g., 'sendSMS', 'sendEmail_failed')"""
        return self.db.add_history_entry(entry_type, fields)

    def get_entries(
        self,
        entry_type: Optional[str] = None,
        limit: int = 100,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[HistoryEntry]:
        return self.db.get_history_entries(entry_type, limit, since=since, until=until)


def _row_to_action(row: HistoryEntryDB) -> PendingAction:
    data = row.data or {}
    return PendingAction(
        entry_id=row.entry_id,
        short_id=row.short_id,
        email_id=data.get("emailId", ""),
        proposed_body=data.get("proposedEmail", ""),
        recipient=data.get("emailRecipient", ""),
        subject=data.get("emailSubject", ""),
        thread_id=data.get("threadId"),
        in_reply_to=data.get("inReplyTo"),
        created_at=row.timestamp,
        status=PendingActionStatus(row.status or PendingActionStatus.CREATED.value),
    )
