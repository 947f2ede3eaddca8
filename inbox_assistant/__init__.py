"""
Venue Inbox Assistant

This service keeps an enriched cache of the venue inbox and runs the
human-in-the-loop reply workflow:
- Syncs inbound Gmail messages into a local cache
- Classifies messages and links them to booking events
- Detects which messages already received a reply
- Drafts replies for new event emails and sends them to a phone over SMS
- Sends the approved (or edited) reply when the operator answers by SMS
"""

__version__ = "1.0.0"
