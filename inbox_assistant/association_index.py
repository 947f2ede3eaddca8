"""
Event association index

Reverse index from a normalized contact email to the booking event that uses
it. The index is rebuilt from the event store when it is older than the
refresh interval; a rebuild replaces the whole map in one assignment so
readers never see a partially built index.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .database import DatabaseManager
from .errors import AssociationLookupError
from .models import AssociationResult, Event, EventStore
from .text_utils import extract_email_address, normalize_email

logger = logging.getLogger(__name__)

LAST_INDEX_REFRESH_KEY = "last_association_index_refresh"


class EventAssociationIndex:
    """Map counterpart email addresses to booking events"""

    def __init__(
        self,
        event_store: EventStore,
        refresh_interval: timedelta = timedelta(minutes=5),
        retry_interval: timedelta = timedelta(minutes=1),
        db: Optional[DatabaseManager] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize the index.

        Args:
            event_store: Source of booking events
            refresh_interval: Maximum age before the index must be rebuilt
            retry_interval: Wait after a failed rebuild before trying again
            db: Optional database used to record the last rebuild time
            clock: Time source
        """
        self.event_store = event_store
        self.refresh_interval = refresh_interval
        self.retry_interval = retry_interval
        self.db = db
        self.clock = clock
        self._index: Dict[str, Event] = {}
        self._last_refresh: Optional[datetime] = None
        self._last_failure: Optional[datetime] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def last_refresh(self) -> Optional[datetime]:
        return self._last_refresh

    def __len__(self) -> int:
        return len(self._index)

    def should_refresh(self) -> bool:
        now = self.clock()
        # Back off after a failed rebuild instead of retrying per lookup
        if self._last_failure is not None and now - self._last_failure <= self.retry_interval:
            return False
        if self._last_refresh is None:
            return True
        return now - self._last_refresh > self.refresh_interval

    async def refresh(self) -> None:
        """Rebuild the index from the event store"""
        try:
            events: List[Event] = await self.event_store.load_events()
        except Exception as e:
            self._last_failure = self.clock()
            raise AssociationLookupError(f"Could not load events: {e}") from e

        index: Dict[str, Event] = {}
        for event in events:
            if not event.email or not event.email.strip():
                continue
            # Later events win for a shared address
            index[normalize_email(event.email)] = event

        self._index = index
        self._last_refresh = self.clock()
        self._last_failure = None
        if self.db:
            self.db.set_timestamp(LAST_INDEX_REFRESH_KEY, self._last_refresh)
        logger.info(f"Association index rebuilt with {len(index)} addresses from {len(events)} events")

    async def ensure_fresh(self) -> None:
        if not self.should_refresh():
            return
        async with self._refresh_lock:
            # Another caller may have rebuilt it while we waited
            if self.should_refresh():
                await self.refresh()

    def lookup(self, from_address: str, to_address: str) -> AssociationResult:
        """Look up the current index snapshot without refreshing"""
        candidate = extract_email_address(from_address) or extract_email_address(to_address)
        if not candidate:
            return AssociationResult()

        event = self._index.get(normalize_email(candidate))
        if event is None:
            return AssociationResult()
        return AssociationResult(event_id=event.id, event_name=event.name)

    async def check_association(self, from_address: str, to_address: str) -> AssociationResult:
        """
        Find the booking event for a message's counterpart address.

        The From header is used when it contains an address, otherwise To.

        Returns:
            AssociationResult, with both fields None when nothing matches or
            the index could not be refreshed
        """
        try:
            await self.ensure_fresh()
        except AssociationLookupError as e:
            logger.warning(f"Skipping association: {e}")
            return AssociationResult()
        return self.lookup(from_address, to_address)
