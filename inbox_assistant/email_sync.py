"""
Email sync engine

Lists inbox ids from the mail provider, hydrates only the ids that are not
cached yet, enriches them (reply status, event association, category) and
merges them into the persisted cache.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .association_index import EventAssociationIndex
from .classifier import EmailClassifier
from .database import DatabaseManager
from .message_cache import MessageCache
from .models import DEFAULT_CATEGORY, INBOX_LABEL, MailGateway, Message
from .text_utils import html_to_text
from .thread_resolver import ThreadReplyResolver

logger = logging.getLogger(__name__)

LAST_RETRIEVAL_KEY = "last_retrieval_timestamp"


def merge_emails(cached: List[Message], new: List[Message]) -> List[Message]:
    """
    Merge freshly hydrated messages into the cached set.

    Content fields come from the new record. Derived fields follow these
    rules: replied stays true once set, has_notified and
    processed_for_suggestions are only ever taken from the cache, category
    prefers the new value, and an association is kept unless the new record
    carries one of its own.

    Args:
        cached: Current cache contents
        new: Newly hydrated messages

    Returns:
        Union by id, sorted by internal_date descending (stable)
    """
    merged: Dict[str, Message] = {m.id: m for m in cached}

    for incoming in new:
        existing = merged.get(incoming.id)
        if existing is None:
            merged[incoming.id] = incoming
            continue

        if incoming.associated_event_id is not None:
            event_id, event_name = incoming.associated_event_id, incoming.associated_event_name
        else:
            event_id, event_name = existing.associated_event_id, existing.associated_event_name

        merged[incoming.id] = incoming.model_copy(update={
            "replied": existing.replied or incoming.replied,
            "has_notified": existing.has_notified,
            "processed_for_suggestions": existing.processed_for_suggestions,
            "category": incoming.category or existing.category or DEFAULT_CATEGORY,
            "associated_event_id": event_id,
            "associated_event_name": event_name,
        })

    return sorted(merged.values(), key=lambda m: m.internal_date, reverse=True)


def _to_minute(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(second=0, microsecond=0)


class EmailSyncEngine:
    """Keeps the message cache in sync with the mailbox"""

    def __init__(
        self,
        mail: MailGateway,
        cache: MessageCache,
        thread_resolver: ThreadReplyResolver,
        association_index: EventAssociationIndex,
        classifier: EmailClassifier,
        db: DatabaseManager,
        concurrency: int = 5,
        batch_timeout: float = 120.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize the sync engine.

        Args:
            mail: Mail provider
            cache: Hydrated message cache
            thread_resolver: Reply status resolver
            association_index: Counterpart address to event index
            classifier: Category classifier
            db: Database holding the cache metadata
            concurrency: Number of hydration workers
            batch_timeout: Deadline in seconds for one hydration batch
            clock: Time source
        """
        self.mail = mail
        self.cache = cache
        self.thread_resolver = thread_resolver
        self.association_index = association_index
        self.classifier = classifier
        self.db = db
        self.concurrency = max(1, concurrency)
        self.batch_timeout = batch_timeout
        self.clock = clock
        self._sync_lock = asyncio.Lock()

    @property
    def last_retrieval(self) -> Optional[datetime]:
        return self.db.get_timestamp(LAST_RETRIEVAL_KEY)

    def is_cache_fresh(self) -> bool:
        """True when the last full retrieval happened in the current minute"""
        last = self.last_retrieval
        if last is None:
            return False
        return _to_minute(last) >= _to_minute(self.clock())

    async def get_all_emails(
        self,
        max_results: int = 50,
        force_refresh: bool = False,
        query: Optional[str] = None,
    ) -> List[Message]:
        """
        Get all inbox messages, refreshing from the provider when needed.

        Args:
            max_results: Maximum ids to list from the provider
            force_refresh: Skip the freshness check
            query: Optional provider search filter

        Returns:
            Messages sorted by internal_date descending
        """
        cached = self.cache.load()
        if not force_refresh and cached and self.is_cache_fresh():
            logger.info(f"Returning {len(cached)} cached emails, cache is fresh")
            return cached

        async with self._sync_lock:
            listed = await self.mail.list_inbox(query, max_results)
            message_ids = list(dict.fromkeys(item["id"] for item in listed))
            new_ids = [message_id for message_id in message_ids if message_id not in self.cache]
            logger.info(f"Listed {len(message_ids)} emails, {len(new_ids)} not cached")

            hydrated = await self._hydrate_batch(new_ids)

            # Merge against the cache as it is now; updates made while we
            # awaited the provider must survive
            merged = merge_emails(self.cache.all(), hydrated)
            hydrated_ids = {m.id for m in hydrated}
            self.cache.replace_all(merged, changed=[m for m in merged if m.id in hydrated_ids])

            # A filtered listing does not cover the whole inbox
            if query is None:
                self.db.set_timestamp(LAST_RETRIEVAL_KEY, self.clock())

        logger.info(f"Email cache now holds {len(merged)} emails ({len(hydrated)} new)")
        return merged

    async def _hydrate_batch(self, message_ids: List[str]) -> List[Message]:
        """
        Hydrate ids with a fixed-width worker pool under a batch deadline.

        Failed ids are left out of the result and are not cached, so the next
        pass retries them. On deadline expiry unfinished workers are cancelled
        and the completed records are kept.
        """
        if not message_ids:
            return []

        queue: "asyncio.Queue[str]" = asyncio.Queue()
        for message_id in message_ids:
            queue.put_nowait(message_id)
        results: Dict[str, Message] = {}

        async def worker() -> None:
            while True:
                try:
                    message_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    results[message_id] = await self.cache.get_or_fetch(message_id, self._hydrate)
                except Exception as e:
                    logger.warning(f"Hydration of {message_id} failed, will retry next pass: {e}")

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(message_ids)))]
        try:
            _, pending = await asyncio.wait(workers, timeout=self.batch_timeout)
            if pending:
                logger.warning(
                    f"Hydration batch exceeded {self.batch_timeout}s, "
                    f"keeping {len(results)}/{len(message_ids)} emails"
                )
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        return [results[message_id] for message_id in message_ids if message_id in results]

    async def _hydrate(self, message_id: str) -> Message:
        """Fetch and enrich one message"""
        raw = await self.mail.get_full(message_id)
        text = raw.text or html_to_text(raw.html)

        replied = await self.thread_resolver.check_if_replied(raw)
        association = await self.association_index.check_association(raw.header("from"), raw.header("to"))
        category = await self.classifier.classify(raw.header("subject"), text or raw.snippet)

        return Message(
            id=raw.id,
            thread_id=raw.thread_id,
            internal_date=raw.internal_date,
            from_address=raw.header("from"),
            to_address=raw.header("to"),
            subject=raw.header("subject"),
            text=text,
            html=raw.html or "",
            labels=list(raw.label_ids),
            snippet=raw.snippet,
            message_id_header=raw.message_id_header or None,
            replied=replied,
            category=category,
            associated_event_id=association.event_id,
            associated_event_name=association.event_name,
        )

    def get_email(self, message_id: str) -> Optional[Message]:
        return self.cache.get(message_id)

    def update_email_in_cache(self, message: Message) -> None:
        """Persist derived-field changes of one cached message"""
        self.cache.put(message)

    async def archive_email(self, message_id: str) -> Optional[Message]:
        """
        Archive a message by removing its INBOX label.

        Returns:
            The updated cached message, or None if it is not cached
        """
        await self.mail.modify_labels(message_id, add=[], remove=[INBOX_LABEL])
        message = self.cache.get(message_id)
        if message is None:
            return None
        updated = message.model_copy(update={"labels": [label for label in message.labels if label != INBOX_LABEL]})
        self.cache.put(updated)
        logger.info(f"Archived email {message_id}")
        return updated
