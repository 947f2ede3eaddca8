"""
Prompt templates for classification, summaries and reply drafts
"""
import json
from typing import Dict, List, Optional

from .models import Event


class PromptTemplates:
    """Builds language model message lists for each pipeline step"""

    ASSISTANT_ROLE = "You are a venue coordinator assistant analyzing email inquiries."

    CLASSIFICATION_SYSTEM_PROMPT = """You are an email triage assistant for an event venue.
Classify each email into exactly one of the provided categories.
Answer only through the provided tool."""

    DRAFT_INSTRUCTIONS = """Don't respond with a subject heading or start with Dear. Be concise.
If they mention food or drinks, provide them with information.
Never use placeholders like [Your Name] or [Date].
Generate ONLY the reply text, no explanations or meta-commentary."""

    @staticmethod
    def build_classification_messages(
        categories: Dict[str, str],
        subject: str,
        body: str,
        max_body_chars: int = 4000,
    ) -> List[Dict[str, str]]:
        """
        Build messages for category classification.

        Args:
            categories: Mapping of category name to description
            subject: Email subject
            body: Email plaintext
            max_body_chars: Body is cut to this many characters

        Returns:
            Message list for LanguageModel.generate
        """
        category_lines = "\n".join(
            f"- {name}: {description}" if description else f"- {name}"
            for name, description in categories.items()
        )
        prompt = (
            f"Categories:\n{category_lines}\n\n"
            f"Subject: {subject}\n\n"
            f"Email:\n{body[:max_body_chars]}"
        )
        return [
            {"role": "system", "content": PromptTemplates.CLASSIFICATION_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

    @staticmethod
    def build_summary_messages(subject: str, content: str, event: Optional[Event] = None) -> List[Dict[str, str]]:
        """Build messages asking for a short summary of the conversation for SMS"""
        prompt_parts = [
            "Please provide a concise but detailed summary of this email conversation.",
            "",
            "Current Email:",
            f"Subject: {subject}",
            f"Content: {content}",
        ]

        if event:
            prompt_parts.extend([
                "",
                "Existing Event Details:",
                f"- Event Name: {event.name}",
                f"- Date: {event.start_time or 'unknown'}",
                f"- Guest Count: {event.attendance or 'unknown'}",
                f"- Room: {event.room or 'unknown'}",
                f"- Services: {event.services or 'none'}",
                f"- Notes: {event.notes or ''}",
                "",
                "Focus on the most recent email. Incorporate relevant event details "
                "into the summary if they relate to the email conversation.",
            ])

        prompt_parts.append("")
        prompt_parts.append("Provide a clear summary in 4-5 sentences.")

        return [
            {"role": "system", "content": "You are a venue coordinator assistant analyzing email conversations."},
            {"role": "user", "content": "\n".join(prompt_parts)},
        ]

    @staticmethod
    def build_draft_messages(
        content: str,
        event: Optional[Event] = None,
        background_info: str = "",
    ) -> List[Dict[str, str]]:
        """
        Build messages asking for a reply draft.

        Args:
            content: Cleaned email content
            event: Booking already associated with the sender, if any
            background_info: Venue notes (pricing, rooms, packages)

        Returns:
            Message list for LanguageModel.generate
        """
        system_prompt = PromptTemplates.ASSISTANT_ROLE
        if background_info:
            system_prompt += f"\n\nVenue background information:\n{background_info}"

        prompt_parts = []
        if event:
            prompt_parts.append("Analyze and respond to this email. Consider the existing event details below.")
        else:
            prompt_parts.append("Analyze and respond to this email. This person does not yet have an event with us.")
        prompt_parts.append("")
        prompt_parts.append(f"Email content: {content}")
        if event:
            event_details = event.model_dump(exclude_none=True)
            prompt_parts.append("")
            prompt_parts.append(f"Existing Event Details: {json.dumps(event_details, indent=2)}")
        prompt_parts.append("")
        prompt_parts.append(PromptTemplates.DRAFT_INSTRUCTIONS)

        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": "\n".join(prompt_parts)},
        ]
