"""
SMS Command Parser

Parses operator SMS replies of the form YES<id> or EDIT<id> <replacement text>.
"""
import re

from .models import ParsedCommand


class CommandParser:
    """Parse approval commands from SMS replies"""

    COMMAND_PATTERN = re.compile(r'^(YES|EDIT)([0-9a-zA-Z]+)(?:\s+(.*))?$', re.IGNORECASE | re.DOTALL)

    def parse(self, message: str) -> ParsedCommand:
        """
        Parse an SMS message and extract the command.

        Args:
            message: The SMS message text

        Returns:
            ParsedCommand with command_type, the lower-cased short id and
            the replacement text for EDIT
        """
        match = self.COMMAND_PATTERN.match(message.strip())
        if not match:
            return ParsedCommand(command_type='unknown', raw_message=message)

        command, short_id, text = match.groups()
        edit_text = text.strip() if text and text.strip() else None
        return ParsedCommand(
            command_type=command.lower(),
            short_id=short_id.lower(),
            edit_text=edit_text,
            raw_message=message,
        )

    def is_valid_command(self, message: str) -> bool:
        """
        Check if a message is a valid command.

        Args:
            message: The SMS message text

        Returns:
            True if the message is a valid command, False otherwise
        """
        parsed = self.parse(message)
        if parsed.command_type == 'edit':
            return parsed.edit_text is not None
        return parsed.command_type != 'unknown'

    def get_help_text(self, short_id: str = "<id>") -> str:
        """
        Get help text explaining available commands.

        Returns:
            Help text string
        """
        return (
            "Commands:\n"
            f"YES{short_id} - Send the proposed response\n"
            f"EDIT{short_id} <text> - Send <text> instead"
        )
