"""
Error types for the inbox pipeline
"""


class InboxAssistantError(Exception):
    """Base class for all pipeline errors"""


class TransientFetchError(InboxAssistantError):
    """Mail provider call failed after the allowed retries (network, rate limit, 5xx)"""


class ClassificationError(InboxAssistantError):
    """Language model failed or returned a category outside the configured set"""


class AssociationLookupError(InboxAssistantError):
    """Event index could not be refreshed or queried"""


class LedgerLookupMiss(InboxAssistantError):
    """No open pending action exists for a short id"""

    def __init__(self, short_id: str):
        super().__init__(f"No pending email found for ID {short_id}")
        self.short_id = short_id


class SendFailure(InboxAssistantError):
    """Outbound mail or SMS could not be delivered"""


class ShortIdCollisionError(InboxAssistantError):
    """Requested short id is already bound to an open pending action"""
