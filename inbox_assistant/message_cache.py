"""
Message cache

Hydrated messages are immutable upstream, so each id is fetched from the
provider at most once. Concurrent requests for the same uncached id share a
single in-flight fetch.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .database import DatabaseManager
from .models import Message

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[Message]]


class MessageCache:
    """Key/value store of hydrated messages backed by the database"""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self._messages: Dict[str, Message] = {}
        self._inflight: Dict[str, "asyncio.Task[Message]"] = {}
        self._loaded = False

    def load(self) -> List[Message]:
        """Load the persisted cache on first use and return it newest first"""
        if not self._loaded:
            self._messages = {m.id: m for m in self.db.load_messages()}
            self._loaded = True
            logger.info(f"Loaded {len(self._messages)} cached messages")
        return self.all()

    def all(self) -> List[Message]:
        return sorted(self._messages.values(), key=lambda m: m.internal_date, reverse=True)

    def get(self, message_id: str) -> Optional[Message]:
        self.load()
        return self._messages.get(message_id)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    async def get_or_fetch(self, message_id: str, fetcher: Fetcher) -> Message:
        """
        Return the cached message, fetching it once if it is not cached.

        Args:
            message_id: Provider message id
            fetcher: Coroutine function that hydrates one id

        Returns:
            The hydrated message

        Raises:
            Whatever the fetcher raised; nothing is cached in that case
        """
        cached = self._messages.get(message_id)
        if cached is not None:
            return cached

        task = self._inflight.get(message_id)
        if task is None:
            task = asyncio.ensure_future(fetcher(message_id))
            self._inflight[message_id] = task
            task.add_done_callback(lambda t, mid=message_id: self._finish_fetch(mid, t))
        return await task

    def _finish_fetch(self, message_id: str, task: "asyncio.Task[Message]") -> None:
        if self._inflight.get(message_id) is task:
            del self._inflight[message_id]
        if task.cancelled() or task.exception() is not None:
            return
        self._messages[message_id] = task.result()

    def put(self, message: Message) -> None:
        """Store one message and persist it"""
        self._messages[message.id] = message
        self.db.save_messages([message])

    def replace_all(self, messages: List[Message], changed: Optional[List[Message]] = None) -> None:
        """
        Swap in a merged message set and persist it.

        Args:
            messages: The full merged set
            changed: Rows to write; all of messages when omitted
        """
        self._messages = {m.id: m for m in messages}
        self._loaded = True
        self.db.save_messages(messages if changed is None else changed)
