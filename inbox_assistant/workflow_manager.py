"""
Workflow Manager

Wires the pipeline together and runs the suggestion step:
1. Sync the inbox cache
2. Pick one event email nobody has answered or been notified about
3. Draft a reply and a summary with the language model
4. Record the draft in the pending action ledger
5. Notify the operator over SMS with the YES/EDIT commands
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from .approval import ApprovalCommandInterpreter
from .association_index import EventAssociationIndex
from .claude_client import ClaudeClient
from .classifier import EmailClassifier
from .config import (
    Settings,
    get_settings,
    load_background_info,
    load_email_categories,
    save_email_categories,
)
from .database import DatabaseManager, get_database_manager
from .email_sync import EmailSyncEngine
from .errors import InboxAssistantError, SendFailure
from .event_store_client import EventStoreClient
from .gmail_client import GmailClient
from .ledger import PendingActionLedger
from .message_cache import MessageCache
from .models import (
    INBOX_LABEL,
    SENT_LABEL,
    Event,
    EventStore,
    LanguageModel,
    MailGateway,
    Message,
    SMSGateway,
    SuggestionResult,
)
from .prompt_templates import PromptTemplates
from .sms_client import SMSGatewayClient, send_sms_with_history
from .text_utils import clean_email_content, extract_email_address, truncate_text
from .thread_resolver import ThreadReplyResolver

logger = logging.getLogger(__name__)

SUGGESTION_CATEGORY = "event"
MAX_PROPOSED_RESPONSE_CHARS = 1400


def select_suggestion_candidate(emails: List[Message]) -> Optional[Message]:
    """First event email that is unanswered, not yet notified and still in the inbox"""
    for email in emails:
        if (
            email.category == SUGGESTION_CATEGORY
            and not email.has_notified
            and not email.replied
            and INBOX_LABEL in email.labels
            and SENT_LABEL not in email.labels
        ):
            return email
    return None


def format_summary_sms(email: Message, summary: str, short_id: str) -> str:
    return (
        "New Event Email (Part 1/2):\n\n"
        f"From: {email.from_address}\n\n"
        f"Summary:\n{summary}\n\n"
        "Reply Options:\n"
        f"YES{short_id} - Send proposed response\n"
        f"EDIT{short_id} <text> - Send your own response"
    )


def format_proposal_sms(proposed_body: str) -> str:
    return f"Proposed Response (Part 2/2):\n\n{truncate_text(proposed_body, MAX_PROPOSED_RESPONSE_CHARS)}"


class WorkflowManager:
    """Owns the pipeline components for one service instance"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        sync: EmailSyncEngine,
        ledger: PendingActionLedger,
        approval: ApprovalCommandInterpreter,
        classifier: EmailClassifier,
        llm: LanguageModel,
        sms: SMSGateway,
        event_store: EventStore,
        notification_phone_number: str,
        background_info: str = "",
        suggestion_fetch_size: int = 25,
        email_categories_file: Optional[str] = None,
    ):
        """
        Initialize workflow manager.

        Args:
            db_manager: Database manager
            sync: Email sync engine
            ledger: Pending action ledger
            approval: SMS command interpreter
            classifier: Email category classifier
            llm: Language model for summaries and drafts
            sms: SMS gateway
            event_store: Booking event store
            notification_phone_number: Operator phone number
            background_info: Venue notes included in drafts
            suggestion_fetch_size: Emails listed per suggestion pass
            email_categories_file: Where category changes are saved
        """
        self.db = db_manager
        self.sync = sync
        self.ledger = ledger
        self.approval = approval
        self.classifier = classifier
        self.llm = llm
        self.sms = sms
        self.event_store = event_store
        self.notification_phone_number = notification_phone_number
        self.background_info = background_info
        self.suggestion_fetch_size = suggestion_fetch_size
        self.email_categories_file = email_categories_file
        self._suggestion_lock = asyncio.Lock()

    async def process_suggestions(self) -> SuggestionResult:
        """
        Run one suggestion pass.

        At most one email is handled per call so the operator is never
        flooded; the next candidate is picked up on a later call.
        """
        async with self._suggestion_lock:
            emails = await self.sync.get_all_emails(max_results=self.suggestion_fetch_size)
            email = select_suggestion_candidate(emails)
            if email is None:
                logger.debug("No new event emails to process")
                return SuggestionResult(success=True, message="No new emails to process")

            try:
                short_id = await self._suggest_reply(email)
            except Exception as e:
                logger.error(f"Error processing email {email.id}: {e}", exc_info=True)
                return SuggestionResult(success=False, message=str(e), email_id=email.id)

            return SuggestionResult(
                success=True,
                message="Processed new email",
                processed_count=1,
                short_id=short_id,
                email_id=email.id,
            )

    async def _load_event(self, event_id: Optional[str]) -> Optional[Event]:
        if not event_id:
            return None
        try:
            return await self.event_store.get_event(event_id)
        except Exception as e:
            logger.warning(f"Could not load event {event_id}, drafting without it: {e}")
            return None

    async def _suggest_reply(self, email: Message) -> str:
        """Draft, record and announce a reply for one email"""
        logger.info(f"Drafting suggestion for email {email.id} from {email.from_address}")

        recipient = extract_email_address(email.from_address)
        if not recipient:
            raise InboxAssistantError(f"No sender address in {email.from_address!r}")

        event = await self._load_event(email.associated_event_id)
        content = clean_email_content(email.text or email.snippet)

        summary = await self.llm.generate(PromptTemplates.build_summary_messages(email.subject, content, event))
        draft = await self.llm.generate(
            PromptTemplates.build_draft_messages(content, event, self.background_info)
        )
        proposed_body = draft.text.strip()
        if not proposed_body:
            raise InboxAssistantError("Language model returned an empty draft")

        subject = email.subject if email.subject.lower().startswith("re:") else f"Re: {email.subject}"
        short_id = self.ledger.create_pending_action(
            email_id=email.id,
            proposed_body=proposed_body,
            recipient=recipient,
            subject=subject,
            thread_id=email.thread_id,
            in_reply_to=email.message_id_header,
        )

        try:
            await send_sms_with_history(
                self.sms,
                self.ledger,
                self.notification_phone_number,
                format_summary_sms(email, summary.text.strip(), short_id),
                summary=f"Summary for {short_id}",
            )
            await send_sms_with_history(
                self.sms,
                self.ledger,
                self.notification_phone_number,
                format_proposal_sms(proposed_body),
                summary=f"Proposed response for {short_id}",
            )
        except SendFailure as e:
            # The operator never saw the commands, so the id must not stay open
            action = self.ledger.get_open_action(short_id)
            if action:
                self.ledger.discard(action, f"Notification failed: {e}")
            raise

        self.sync.update_email_in_cache(
            email.model_copy(update={"has_notified": True, "processed_for_suggestions": True})
        )
        logger.info(f"Suggestion {short_id} sent for email {email.id}")
        return short_id

    def get_email_categories(self) -> Dict[str, str]:
        return self.classifier.categories

    def update_email_categories(self, categories: Dict[str, str]) -> Dict[str, str]:
        """Validate, apply and save a new category set"""
        self.classifier.set_categories(categories)
        save_email_categories(self.email_categories_file, self.classifier.categories)
        return self.classifier.categories

    async def close(self) -> None:
        close = getattr(self.sms, "close", None)
        if close is not None:
            await close()
        self.db.close()


def build_workflow_manager(
    settings: Settings,
    db_manager: DatabaseManager,
    mail: MailGateway,
    llm: LanguageModel,
    sms: SMSGateway,
    event_store: EventStore,
) -> WorkflowManager:
    """Assemble a workflow manager around the given collaborators"""
    classifier = EmailClassifier(llm, load_email_categories(settings.email_categories_file))
    association_index = EventAssociationIndex(
        event_store,
        refresh_interval=timedelta(seconds=settings.association_refresh_seconds),
        db=db_manager,
    )
    sync = EmailSyncEngine(
        mail=mail,
        cache=MessageCache(db_manager),
        thread_resolver=ThreadReplyResolver(mail),
        association_index=association_index,
        classifier=classifier,
        db=db_manager,
        concurrency=settings.hydration_concurrency,
        batch_timeout=settings.hydration_batch_timeout,
    )
    ledger = PendingActionLedger(db_manager)

    return WorkflowManager(
        db_manager=db_manager,
        sync=sync,
        ledger=ledger,
        approval=ApprovalCommandInterpreter(ledger, mail, sms),
        classifier=classifier,
        llm=llm,
        sms=sms,
        event_store=event_store,
        notification_phone_number=settings.notification_phone_number,
        background_info=load_background_info(settings.background_info_file),
        suggestion_fetch_size=settings.suggestion_fetch_size,
        email_categories_file=settings.email_categories_file,
    )


def get_workflow_manager(settings: Optional[Settings] = None) -> WorkflowManager:
    """
    Get workflow manager instance from settings.

    Returns:
        WorkflowManager instance
    """
    settings = settings or get_settings()
    if not settings.notification_phone_number:
        raise ValueError("NOTIFICATION_PHONE_NUMBER must be set in environment")

    db_manager = get_database_manager(settings.database_url)
    mail = GmailClient.from_token_file(
        settings.gmail_token_file,
        user_id=settings.gmail_user_id,
        base_query=settings.gmail_query,
        max_retries=settings.max_fetch_retries,
        backoff_seconds=settings.retry_backoff_seconds,
    )
    llm = ClaudeClient(
        api_key=settings.anthropic_api_key or None,
        model=settings.anthropic_model,
        max_tokens=settings.llm_max_tokens,
    )
    sms = SMSGatewayClient(
        settings.sms_gateway_url,
        settings.sms_gateway_username,
        settings.sms_gateway_password,
    )
    event_store = EventStoreClient(settings.event_store_url)

    return build_workflow_manager(settings, db_manager, mail, llm, sms, event_store)
