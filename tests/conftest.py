"""
Shared fixtures and in-memory collaborators
"""
import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import pytest

from inbox_assistant.config import Settings
from inbox_assistant.database import DatabaseManager
from inbox_assistant.errors import SendFailure
from inbox_assistant.models import Event, LLMResult, MailSendResult, RawMail, SMSResponse


NOTIFICATION_NUMBER = "+15551234567"


def make_raw(
    message_id: str,
    thread_id: Optional[str] = None,
    internal_date: int = 0,
    from_address: str = "Guest <guest@example.com>",
    to_address: str = "venue@example.com",
    subject: str = "Booking inquiry",
    text: Optional[str] = "Hello, can we book the back room?",
    html: Optional[str] = None,
    labels: Optional[List[str]] = None,
    message_id_header: str = "",
    in_reply_to: str = "",
    references: str = "",
) -> RawMail:
    """Helper to create a provider message"""
    headers = {"from": from_address, "to": to_address, "subject": subject}
    if message_id_header:
        headers["message-id"] = message_id_header
    if in_reply_to:
        headers["in-reply-to"] = in_reply_to
    if references:
        headers["references"] = references
    return RawMail(
        id=message_id,
        thread_id=thread_id if thread_id is not None else f"t-{message_id}",
        internal_date=internal_date,
        headers=headers,
        text=text,
        html=html,
        label_ids=labels if labels is not None else ["INBOX"],
        snippet=(text or "")[:50],
    )


class FakeMailGateway:
    """In-memory mailbox recording every call"""

    def __init__(self, messages: Optional[List[RawMail]] = None):
        self.messages: Dict[str, RawMail] = {}
        self.threads: Dict[str, List[RawMail]] = {}
        self.list_calls: List[tuple] = []
        self.get_full_calls: List[str] = []
        self.get_thread_calls: List[str] = []
        self.sent: List[dict] = []
        self.label_changes: List[tuple] = []
        self.fail_ids: set = set()
        self.fail_threads: set = set()
        self.delays: Dict[str, float] = {}
        self.default_delay = 0.0
        self.send_error: Optional[Exception] = None
        self.send_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        for message in messages or []:
            self.add(message)

    def add(self, message: RawMail, in_inbox: bool = True) -> None:
        if in_inbox:
            self.messages[message.id] = message
        self.threads.setdefault(message.thread_id, []).append(message)

    async def list_inbox(self, query: Optional[str], max_results: int) -> List[Dict[str, str]]:
        self.list_calls.append((query, max_results))
        ordered = sorted(self.messages.values(), key=lambda m: m.internal_date, reverse=True)
        return [{"id": m.id, "threadId": m.thread_id} for m in ordered[:max_results]]

    async def get_full(self, message_id: str) -> RawMail:
        self.get_full_calls.append(message_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(message_id, self.default_delay))
            if message_id in self.fail_ids:
                raise ConnectionError(f"fetch of {message_id} failed")
            return self.messages[message_id]
        finally:
            self.in_flight -= 1

    async def get_thread(self, thread_id: str) -> List[RawMail]:
        self.get_thread_calls.append(thread_id)
        await asyncio.sleep(0)
        if thread_id in self.fail_threads:
            raise ConnectionError(f"thread {thread_id} unavailable")
        return list(self.threads.get(thread_id, []))

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        thread_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
    ) -> MailSendResult:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append({
            "to": to,
            "subject": subject,
            "body": html_body,
            "thread_id": thread_id,
            "in_reply_to": in_reply_to,
        })
        return MailSendResult(id=f"sent-{len(self.sent)}", thread_id=thread_id)

    async def modify_labels(self, message_id: str, add: List[str], remove: List[str]) -> None:
        self.label_changes.append((message_id, list(add), list(remove)))


class FakeEventStore:
    """Event store serving a fixed list of events"""

    def __init__(self, events: Optional[List[Event]] = None):
        self.events = list(events or [])
        self.load_calls = 0
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def load_events(self) -> List[Event]:
        self.load_calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.events)

    async def get_event(self, event_id: str) -> Optional[Event]:
        for event in self.events:
            if event.id == str(event_id):
                return event
        return None


class FakeLanguageModel:
    """Language model answering classification and drafting requests"""

    def __init__(self, category: str = "event", draft: str = "Thanks for reaching out! The back room is available."):
        self.category = category
        self.category_for: Callable[[str], Optional[str]] = lambda prompt: None
        self.draft = draft
        self.summary = "Guest asks to book the back room for 30 people."
        self.classification_error: Optional[Exception] = None
        self.calls: List[dict] = []

    async def generate(self, messages, schema=None, schema_name="structured_output") -> LLMResult:
        self.calls.append({"messages": messages, "schema": schema, "schema_name": schema_name})
        prompt = messages[-1]["content"]
        if schema is not None:
            if self.classification_error is not None:
                raise self.classification_error
            return LLMResult(structured={"category": self.category_for(prompt) or self.category})
        if "summary" in prompt.lower():
            return LLMResult(text=self.summary)
        return LLMResult(text=self.draft)


class FakeSMSGateway:
    """SMS gateway recording outbound messages"""

    def __init__(self):
        self.sent: List[tuple] = []
        self.fail = False

    async def send_sms(self, phone_number: str, message: str) -> SMSResponse:
        if self.fail:
            return SMSResponse(success=False, error="gateway offline")
        self.sent.append((phone_number, message))
        return SMSResponse(success=True, message_id=f"sms-{len(self.sent)}", status="Pending")


class FailingSMSGateway(FakeSMSGateway):
    async def send_sms(self, phone_number: str, message: str) -> SMSResponse:
        raise SendFailure("gateway offline")


class MutableClock:
    """Clock whose time can be moved forward in tests"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 6, 1, 12, 0, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def db():
    """In-memory database with tables created"""
    manager = DatabaseManager("sqlite://")
    manager.init_tables()
    yield manager
    manager.close()


@pytest.fixture
def mail():
    return FakeMailGateway()


@pytest.fixture
def event_store():
    return FakeEventStore([
        Event(id=1, name="Smith Wedding", email="guest@example.com"),
        Event(id=2, name="Acme Offsite", email="planner@acme.com"),
    ])


@pytest.fixture
def llm():
    return FakeLanguageModel()


@pytest.fixture
def sms():
    return FakeSMSGateway()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        notification_phone_number=NOTIFICATION_NUMBER,
        email_categories_file=None,
        background_info_file=None,
        poll_interval=0,
    )
