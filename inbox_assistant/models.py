"""
Pydantic models and collaborator interfaces for the inbox pipeline
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


SENT_LABEL = "SENT"
INBOX_LABEL = "INBOX"
DEFAULT_CATEGORY = "other"


# Mail Models
class RawMail(BaseModel):
    """Message as returned by the mail provider, before enrichment"""
    id: str
    thread_id: Optional[str] = None
    internal_date: int = 0
    headers: Dict[str, str] = Field(default_factory=dict)  # lower-cased names
    text: Optional[str] = None
    html: Optional[str] = None
    label_ids: List[str] = Field(default_factory=list)
    snippet: str = ""

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")

    @property
    def message_id_header(self) -> str:
        return self.header("message-id").strip()

    @property
    def in_reply_to(self) -> str:
        return self.header("in-reply-to")

    @property
    def references(self) -> str:
        return self.header("references")

    @property
    def is_sent(self) -> bool:
        return SENT_LABEL in self.label_ids


class Message(BaseModel):
    """Cached, enriched inbound message"""
    id: str
    thread_id: Optional[str] = None
    internal_date: int = 0
    from_address: str = ""
    to_address: str = ""
    subject: str = ""
    text: str = ""
    html: str = ""
    labels: List[str] = Field(default_factory=list)
    snippet: str = ""
    message_id_header: Optional[str] = None

    # Derived fields
    replied: bool = False
    category: str = DEFAULT_CATEGORY
    associated_event_id: Optional[str] = None
    associated_event_name: Optional[str] = None
    has_notified: bool = False
    processed_for_suggestions: bool = False


class MailSendResult(BaseModel):
    """Result of sending a message through the mail provider"""
    id: str
    thread_id: Optional[str] = None


# Event Models
class Event(BaseModel):
    """Booking record owned by the external event store"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str = ""
    email: str = ""
    start_time: Optional[str] = Field(default=None, validation_alias=AliasChoices("start_time", "startTime"))
    end_time: Optional[str] = Field(default=None, validation_alias=AliasChoices("end_time", "endTime"))
    attendance: Optional[str] = None
    services: Optional[str] = None
    room: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("attendance", "services", "room", mode="before")
    @classmethod
    def _join_lists(cls, value: Any) -> Optional[str]:
        # The event store keeps multi-valued fields as ';'-joined strings
        if value is None:
            return None
        if isinstance(value, (list, tuple)):
            return ";".join(str(v) for v in value)
        return str(value)


class AssociationResult(BaseModel):
    """Event linked to a message, both fields null when there is none"""
    event_id: Optional[str] = None
    event_name: Optional[str] = None


# Ledger Models
class PendingActionStatus(str, Enum):
    """Lifecycle of a pending action"""
    CREATED = "created"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


class PendingAction(BaseModel):
    """AI-drafted reply waiting for operator approval"""
    entry_id: str
    short_id: str
    email_id: str
    proposed_body: str
    recipient: str
    subject: str
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    created_at: datetime
    status: PendingActionStatus = PendingActionStatus.CREATED


class HistoryEntry(BaseModel):
    """One row of the history ledger"""
    entry_id: str
    type: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


# Command Models
class ParsedCommand(BaseModel):
    """Parsed SMS command"""
    command_type: str  # 'yes', 'edit', 'unknown'
    short_id: Optional[str] = None
    edit_text: Optional[str] = None
    raw_message: str


class CommandResult(BaseModel):
    """Outcome of an SMS command, echoed back to the sender"""
    success: bool
    message: str
    short_id: Optional[str] = None


# Language Model Models
class LLMResult(BaseModel):
    """Language model output; structured is set when a schema was requested"""
    text: str = ""
    structured: Optional[Dict[str, Any]] = None


# SMS Models
class SMSResponse(BaseModel):
    """Response from SMS Gateway"""
    success: bool
    message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class InboundSMS(BaseModel):
    """Inbound SMS delivered to the reply webhook"""
    model_config = ConfigDict(populate_by_name=True)

    from_number: str = Field(..., validation_alias=AliasChoices("from", "From", "from_number"))
    to: Optional[str] = Field(default=None, validation_alias=AliasChoices("to", "To"))
    text: str = Field(..., validation_alias=AliasChoices("text", "Text"))


class WebhookPayload(BaseModel):
    """Nested payload within webhook from Android SMS Gateway app"""
    messageId: str
    message: str
    phoneNumber: str
    simNumber: Optional[int] = None
    receivedAt: str


class IncomingSMSWebhook(BaseModel):
    """Webhook payload for incoming SMS from Android gateway"""
    deviceId: str
    event: str
    id: str
    payload: WebhookPayload
    webhookId: str


# API Models
class SyncRequest(BaseModel):
    """Manual refresh trigger"""
    max_results: int = Field(default=50, ge=1, le=500)
    force_refresh: bool = True
    query: Optional[str] = None


class EmailListResponse(BaseModel):
    """Cached messages, newest first"""
    emails: List[Message]
    total: int


class SuggestionResult(BaseModel):
    """Outcome of one suggestion pass"""
    success: bool
    message: str
    processed_count: int = 0
    short_id: Optional[str] = None
    email_id: Optional[str] = None


class EmailCategory(BaseModel):
    """One entry of the configured category set"""
    name: str = Field(..., min_length=1)
    description: str = ""


class EmailCategoriesPayload(BaseModel):
    """Category set as exchanged with the settings endpoint"""
    email_categories: List[EmailCategory]


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    cached_emails: int
    open_actions: int
    last_retrieval: Optional[datetime]
    uptime_seconds: float


# Collaborator interfaces
class MailGateway(Protocol):
    async def list_inbox(self, query: Optional[str], max_results: int) -> List[Dict[str, str]]: ...

    async def get_full(self, message_id: str) -> RawMail: ...

    async def get_thread(self, thread_id: str) -> List[RawMail]: ...

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        thread_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
    ) -> MailSendResult: ...

    async def modify_labels(self, message_id: str, add: List[str], remove: List[str]) -> None: ...


class EventStore(Protocol):
    async def load_events(self) -> List[Event]: ...

    async def get_event(self, event_id: str) -> Optional[Event]: ...


class LanguageModel(Protocol):
    async def generate(
        self,
        messages: List[Dict[str, str]],
        schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "structured_output",
    ) -> LLMResult: ...


class SMSGateway(Protocol):
    async def send_sms(self, phone_number: str, message: str) -> SMSResponse: ...
