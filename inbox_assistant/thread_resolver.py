"""
Thread reply resolution

Decides whether an inbound message has since been answered from our mailbox.
"""
import asyncio
import logging
from typing import Dict, List

from .models import MailGateway, RawMail

logger = logging.getLogger(__name__)


class ThreadReplyResolver:
    """Check reply status of messages using per-thread caching"""

    def __init__(self, mail: MailGateway):
        self.mail = mail
        self._threads: Dict[str, "asyncio.Task[List[RawMail]]"] = {}

    async def get_thread(self, thread_id: str) -> List[RawMail]:
        """Fetch a thread once; concurrent callers share the same fetch"""
        task = self._threads.get(thread_id)
        if task is None:
            task = asyncio.ensure_future(self.mail.get_thread(thread_id))
            self._threads[thread_id] = task
            task.add_done_callback(lambda t, tid=thread_id: self._drop_failed(tid, t))
        return await task

    def _drop_failed(self, thread_id: str, task: "asyncio.Task[List[RawMail]]") -> None:
        if task.cancelled() or task.exception() is not None:
            if self._threads.get(thread_id) is task:
                del self._threads[thread_id]

    async def check_if_replied(self, message: RawMail) -> bool:
        """
        Check whether a message has received a reply.

        A message counts as replied when a sent message in its thread either
        references its Message-ID (In-Reply-To / References), or was sent
        later than it. The second rule covers clients that do not set
        correlation headers and intentionally matches any later outbound
        message in the thread.

        Args:
            message: The inbound message

        Returns:
            True if replied, False otherwise (including on any failure)
        """
        if not message.thread_id:
            return False

        try:
            thread_messages = await self.get_thread(message.thread_id)
        except Exception as e:
            logger.warning(f"Could not load thread {message.thread_id} for {message.id}: {e}")
            return False

        message_id_header = message.message_id_header
        sent_messages = [m for m in thread_messages if m.is_sent and m.id != message.id]

        for sent in sent_messages:
            if message_id_header and (
                message_id_header in sent.in_reply_to or message_id_header in sent.references
            ):
                return True

        return any(sent.internal_date > message.internal_date for sent in sent_messages)
