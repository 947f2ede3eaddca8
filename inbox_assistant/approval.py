"""
Approval command interpreter

Turns operator SMS commands into sent replies. Each open pending action is
claimed before its send so two racing commands cannot both deliver it; a
failed send releases the claim so a fresh command can try again.
"""
import logging
from typing import Optional

from .command_parser import CommandParser
from .errors import LedgerLookupMiss, SendFailure
from .ledger import PendingActionLedger
from .models import CommandResult, MailGateway, SMSGateway
from .sms_client import send_sms_with_history
from .text_utils import text_to_html

logger = logging.getLogger(__name__)

INVALID_FORMAT_MESSAGE = "Invalid format. Please reply with YES{id} or EDIT{id} {new_message}"
INVALID_COMMAND_MESSAGE = "Invalid command format"
SENT_MESSAGE = "Email sent successfully"
MODIFIED_SENT_MESSAGE = "Modified email sent successfully"


class ApprovalCommandInterpreter:
    """Resolve YES/EDIT commands against the pending action ledger"""

    def __init__(
        self,
        ledger: PendingActionLedger,
        mail: MailGateway,
        sms: SMSGateway,
        command_parser: Optional[CommandParser] = None,
    ):
        self.ledger = ledger
        self.mail = mail
        self.sms = sms
        self.command_parser = command_parser or CommandParser()

    async def resolve_command(self, sms_text: str, from_number: str) -> CommandResult:
        """
        Execute one SMS command.

        Args:
            sms_text: Raw SMS text
            from_number: Sender of the SMS

        Returns:
            CommandResult describing the outcome; never a silent retry
        """
        parsed = self.command_parser.parse(sms_text)
        if parsed.command_type == 'unknown':
            logger.warning(f"Unrecognized command from {from_number}: {sms_text!r}")
            return CommandResult(success=False, message=INVALID_FORMAT_MESSAGE)

        short_id = parsed.short_id
        action = self.ledger.get_open_action(short_id)
        if action is None:
            return CommandResult(success=False, message=str(LedgerLookupMiss(short_id)), short_id=short_id)

        if parsed.command_type == 'edit' and not parsed.edit_text:
            return CommandResult(success=False, message=INVALID_COMMAND_MESSAGE, short_id=short_id)

        # Another command for this id got here first
        if not self.ledger.claim(action.short_id):
            logger.warning(f"Pending action {short_id} was claimed concurrently")
            return CommandResult(success=False, message=str(LedgerLookupMiss(short_id)), short_id=short_id)

        body = action.proposed_body if parsed.command_type == 'yes' else parsed.edit_text
        logger.info(f"Executing {parsed.command_type.upper()} for {short_id}, sending to {action.recipient}")

        try:
            sent = await self.mail.send(
                to=action.recipient,
                subject=action.subject,
                html_body=text_to_html(body),
                thread_id=action.thread_id,
                in_reply_to=action.in_reply_to,
            )
        except Exception as e:
            logger.error(f"Error sending email for {short_id}: {e}")
            self.ledger.add_entry(
                "sendEmail_failed",
                shortId=action.short_id,
                emailId=action.email_id,
                to=action.recipient,
                command=parsed.command_type,
                error=str(e),
            )
            self.ledger.release(action)
            return CommandResult(success=False, message=f"Failed to send email: {e}", short_id=short_id)

        self.ledger.mark_resolved(action, parsed.command_type, sent.id)
        message = SENT_MESSAGE if parsed.command_type == 'yes' else MODIFIED_SENT_MESSAGE
        return CommandResult(success=True, message=message, short_id=short_id)

    async def handle_sms(self, sms_text: str, from_number: str) -> CommandResult:
        """Resolve a command and echo the outcome back to the sender"""
        result = await self.resolve_command(sms_text, from_number)

        reply = result.message if result.success else f"Error: {result.message}"
        try:
            await send_sms_with_history(self.sms, self.ledger, from_number, reply, summary="Command result")
        except SendFailure as e:
            logger.error(f"Could not send command result to {from_number}: {e}")

        return result
