"""
Gmail API client

MailGateway implementation over the Gmail REST API. The discovery client is
blocking, so each call runs in a worker thread with its own httplib2.Http
(httplib2 connections are not thread-safe). Reads are retried on transient
failures; sends are never retried.
"""
import asyncio
import base64
import logging
from email.message import Message
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Optional, Sequence

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import SendFailure, TransientFetchError
from .models import MailSendResult, RawMail

logger = logging.getLogger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class GmailClient:
    """Async wrapper around the Gmail API for the operations the pipeline needs"""

    def __init__(
        self,
        credentials: Credentials,
        user_id: str = "me",
        base_query: Optional[str] = None,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
    ):
        """
        Initialize Gmail client

        Args:
            credentials: Authorized user credentials (acquired outside this service)
            user_id: Mailbox to operate on
            base_query: Filter applied to every inbox listing
            max_retries: Retries for transient read failures
            backoff_seconds: Base delay, multiplied by the attempt number
        """
        self.credentials = credentials
        self.user_id = user_id
        self.base_query = base_query
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._service = build("gmail", "v1", credentials=credentials, cache_discovery=False)

    @classmethod
    def from_token_file(cls, token_file: str, **kwargs: Any) -> "GmailClient":
        credentials = Credentials.from_authorized_user_file(token_file, GMAIL_SCOPES)
        return cls(credentials, **kwargs)

    def _execute(self, request: Any) -> Dict[str, Any]:
        http = AuthorizedHttp(self.credentials, http=httplib2.Http())
        return request.execute(http=http)

    async def _read(self, description: str, make_request: Callable[[], Any]) -> Dict[str, Any]:
        """
        Execute a read request, retrying transient failures.

        Raises:
            TransientFetchError: When retries are exhausted
            HttpError: For non-transient API errors
        """
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self._execute, make_request())
            except HttpError as e:
                if e.resp.status not in RETRYABLE_STATUS_CODES:
                    raise
                error: Exception = e
            except OSError as e:
                error = e

            attempt += 1
            if attempt > self.max_retries:
                raise TransientFetchError(f"{description} failed after {self.max_retries} retries: {error}") from error
            delay = self.backoff_seconds * attempt
            logger.warning(f"{description} failed ({error}), retry {attempt}/{self.max_retries} in {delay:.1f}s")
            await asyncio.sleep(delay)

    async def list_inbox(self, query: Optional[str], max_results: int) -> List[Dict[str, str]]:
        """List message ids in the inbox, newest first"""
        def make_request():
            kwargs: Dict[str, Any] = {
                "userId": self.user_id,
                "labelIds": ["INBOX"],
                "maxResults": max_results,
            }
            combined = " ".join(q for q in (self.base_query, query) if q)
            if combined:
                kwargs["q"] = combined
            return self._service.users().messages().list(**kwargs)

        response = await self._read("List inbox", make_request)
        messages = response.get("messages", [])
        logger.info(f"Listed {len(messages)} inbox message ids")
        return [{"id": m["id"], "threadId": m.get("threadId", "")} for m in messages]

    async def get_full(self, message_id: str) -> RawMail:
        response = await self._read(
            f"Get message {message_id}",
            lambda: self._service.users().messages().get(userId=self.user_id, id=message_id, format="full"),
        )
        return parse_message(response)

    async def get_thread(self, thread_id: str) -> List[RawMail]:
        response = await self._read(
            f"Get thread {thread_id}",
            lambda: self._service.users().threads().get(userId=self.user_id, id=thread_id, format="full"),
        )
        return [parse_message(m) for m in response.get("messages", [])]

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        thread_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
    ) -> MailSendResult:
        """
        Send an HTML message, threading it when ids are given.

        Raises:
            SendFailure: On any error; the send is not retried
        """
        message = MIMEText(html_body, "html", "utf-8")
        message["To"] = to
        message["Subject"] = subject
        if in_reply_to:
            message["In-Reply-To"] = in_reply_to
            message["References"] = in_reply_to

        body: Dict[str, Any] = {"raw": base64.urlsafe_b64encode(message.as_bytes()).decode("utf-8")}
        if thread_id:
            body["threadId"] = thread_id

        request = self._service.users().messages().send(userId=self.user_id, body=body)
        try:
            response = await asyncio.to_thread(self._execute, request)
        except (HttpError, OSError) as e:
            raise SendFailure(f"Gmail send to {to} failed: {e}") from e

        logger.info(f"Sent email to {to}: {response.get('id')}")
        return MailSendResult(id=response["id"], thread_id=response.get("threadId"))

    async def modify_labels(self, message_id: str, add: List[str], remove: List[str]) -> None:
        body = {"addLabelIds": list(add), "removeLabelIds": list(remove)}
        await self._read(
            f"Modify labels of {message_id}",
            lambda: self._service.users().messages().modify(userId=self.user_id, id=message_id, body=body),
        )
        logger.info(f"Modified labels of {message_id}: +{add} -{remove}")


def parse_message(response: Dict[str, Any]) -> RawMail:
    """Convert a Gmail API message resource (format=full) to RawMail"""
    payload = response.get("payload", {})
    return RawMail(
        id=response["id"],
        thread_id=response.get("threadId"),
        internal_date=int(response.get("internalDate", 0) or 0),
        headers=_headers_to_dict(payload.get("headers", [])),
        text=_extract_part(payload, "text/plain"),
        html=_extract_part(payload, "text/html"),
        label_ids=response.get("labelIds", []),
        snippet=response.get("snippet", ""),
    )


def _headers_to_dict(headers: Sequence[Dict[str, str]]) -> Dict[str, str]:
    mapped: Dict[str, str] = {}
    for header in headers:
        name = header.get("name", "").lower()
        value = header.get("value", "")
        mapped[name] = value
    return mapped


def _extract_part(payload: Dict[str, Any], mime_type: str) -> Optional[str]:
    """Concatenate every body part of the given MIME type, depth first"""
    chunks: List[str] = []

    def walk(part: Dict[str, Any]) -> None:
        data = part.get("body", {}).get("data")
        if part.get("mimeType") == mime_type and data:
            chunks.append(_decode_body(data, _part_charset(part)))
        for child in part.get("parts", []) or []:
            walk(child)

    walk(payload)
    return "".join(chunks) if chunks else None


def _part_charset(part: Dict[str, Any]) -> str:
    """Charset declared in the part's Content-Type header, utf-8 if none"""
    content_type = _headers_to_dict(part.get("headers", [])).get("content-type")
    if not content_type:
        return "utf-8"
    header = Message()
    header["Content-Type"] = content_type
    return header.get_content_charset() or "utf-8"


def _decode_body(data: str, charset: str = "utf-8") -> str:
    try:
        # Gmail strips the padding
        raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except ValueError:
        return ""
    try:
        return raw.decode(charset)
    except (LookupError, UnicodeDecodeError):
        logger.debug(f"Body is not valid {charset}, decoding as utf-8 with replacement")
        return raw.decode("utf-8", errors="replace")
