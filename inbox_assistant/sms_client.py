"""Client for communicating with the Android SMS Gateway app."""

import logging
import re
from typing import Optional, Protocol

import httpx

from .errors import SendFailure
from .models import SMSGateway, SMSResponse

logger = logging.getLogger(__name__)


class SMSGatewayClient:
    """Operator notifications through the Android SMS Gateway app (sms-gate.app)."""

    def __init__(
        self,
        gateway_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
    ):
        """
        Initialize SMS Gateway client.

        Args:
            gateway_url: Base URL of the phone running the gateway app
            username: Basic auth username
            password: Basic auth password
            timeout: Request timeout in seconds
        """
        self.gateway_url = gateway_url.rstrip("/")
        self.auth = (username, password)
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, auth=self.auth)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def send_sms(self, phone_number: str, message: str) -> SMSResponse:
        """
        Send an SMS via the Android gateway.

        Args:
            phone_number: Destination phone number
            message: SMS message content

        Returns:
            SMSResponse; failures are reported, not raised
        """
        client = await self._get_client()
        to = normalize_phone_number(phone_number)

        payload = {
            "phoneNumbers": [to],
            "message": message.strip(),
        }

        try:
            response = await client.post(
                f"{self.gateway_url}/message",
                json=payload,
            )
            response.raise_for_status()

            data = response.json()
            return SMSResponse(success=True, message_id=data.get("id"), status=data.get("state"))

        except httpx.HTTPStatusError as e:
            error_msg = f"HTTP error {e.response.status_code}: {e.response.text}"
            logger.error(f"Failed to send SMS: {error_msg}")
            return SMSResponse(success=False, error=error_msg)

        except httpx.RequestError as e:
            error_msg = f"Request failed: {str(e)}"
            logger.error(f"Failed to send SMS: {error_msg}")
            return SMSResponse(success=False, error=error_msg)


def normalize_phone_number(phone_number: str) -> str:
    """
    Normalize a phone number to E.164.

    Bare 10-digit numbers are treated as North American and get the +1
    country code.
    """
    digits = re.sub(r"\D", "", phone_number)
    if phone_number.strip().startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


class HistoryRecorder(Protocol):
    def add_entry(self, entry_type: str, **fields) -> object: ...


async def send_sms_with_history(
    sms: SMSGateway,
    history: HistoryRecorder,
    to: str,
    message: str,
    summary: Optional[str] = None,
) -> SMSResponse:
    """
    Send an SMS and record the outcome in the history ledger.

    Records a 'sendSMS' entry on success and 'sendSMS_failed' otherwise.

    Raises:
        SendFailure: If the gateway did not accept the message
    """
    try:
        response = await sms.send_sms(to, message)
    except Exception as e:
        response = SMSResponse(success=False, error=str(e))

    if response.success:
        history.add_entry(
            "sendSMS",
            to=to,
            messageLength=len(message),
            summary=summary or "SMS notification sent",
            messageId=response.message_id,
            status=response.status,
        )
        logger.info(f"SMS sent to {to}, message_id: {response.message_id}")
        return response

    history.add_entry(
        "sendSMS_failed",
        to=to,
        error=response.error,
        messageLength=len(message),
    )
    raise SendFailure(f"Failed to send SMS: {response.error}")
