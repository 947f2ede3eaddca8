"""
Event Store Client

Reads booking events from the venue's remote events API.
"""
import logging
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from .models import Event

logger = logging.getLogger(__name__)


class EventStoreClient:
    """Client for the remote events API"""

    EVENTS_PATH = "/api/getEventsContacts"

    def __init__(self, base_url: str, timeout: int = 30):
        """
        Initialize event store client.

        Args:
            base_url: Base URL of the events API
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    async def load_events(self) -> List[Event]:
        """
        Load all booking events.

        Returns:
            Events in the order the store returns them

        Raises:
            httpx.HTTPError: If the request fails
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}{self.EVENTS_PATH}")
            response.raise_for_status()
            data: Any = response.json()

        # The store answers either with a bare list or {"contacts": [...]}
        if isinstance(data, dict):
            data = data.get("contacts", [])

        events = []
        for item in data:
            try:
                events.append(Event.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed event {item.get('id') if isinstance(item, dict) else item!r}: {e}")
        logger.info(f"Loaded {len(events)} events from event store")
        return events

    async def get_event(self, event_id: str) -> Optional[Event]:
        """
        Get one event by id.

        Returns:
            The event, or None if it does not exist
        """
        for event in await self.load_events():
            if event.id == str(event_id):
                return event
        return None
