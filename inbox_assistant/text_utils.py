"""
Text helpers for email bodies, addresses and SMS formatting
"""
import html
import re
from typing import Optional

EMAIL_ADDRESS_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_BLOCK_TAGS = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\b[^>]*>", re.IGNORECASE)
_DROP_BLOCKS = re.compile(r"<(script|style|head)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_ANY_TAG = re.compile(r"<[^>]+>")


def html_to_text(body_html: Optional[str]) -> str:
    """
    Derive plaintext from an HTML body.

    Line-breaking tags become newlines, remaining tags are dropped and
    entities are unescaped.
    """
    if not body_html:
        return ""
    text = _DROP_BLOCKS.sub("", body_html)
    text = _BLOCK_TAGS.sub("\n", text)
    text = _ANY_TAG.sub("", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def text_to_html(body_text: str) -> str:
    """Render a plain reply body as minimal HTML"""
    return html.escape(body_text).replace("\n", "<br>\n")


def clean_email_content(content: Optional[str]) -> str:
    """
    Strip signatures, link noise and quoting markers from an email chain
    before it is handed to the language model.
    """
    if not content:
        return ""

    text = content
    text = re.sub(r"\[https?://[^\]]+\]", "", text)
    # Only remove HTML tags, not addresses in angle brackets
    text = re.sub(r"<(?![\w.@-]+>)[^>]+>", "", text)
    text = re.sub(r"\s*Get Outlook for iOS\s*", "", text, count=1)
    text = re.sub(r"\s*Learn why this is important\s*", "", text, count=1)
    text = re.sub(r"\s*You don't often get email from.*?\s*", "", text)

    text = re.sub(r"[\t ]+", " ", text)
    text = re.sub(r"\n\s*\n\s*\n", "\n\n", text)
    text = re.sub(r"^\s+|\s+$", "", text, flags=re.MULTILINE)
    text = text.replace("________________________________", "\n---\n")
    text = re.sub(r"^[>\s]+(?=\S)", "", text, flags=re.MULTILINE)
    text = re.sub(r"[\r\n]+", "\n", text)
    return text.strip()


def extract_email_address(header_value: Optional[str]) -> Optional[str]:
    """Return the first address found in a From/To header value"""
    if not header_value:
        return None
    match = EMAIL_ADDRESS_PATTERN.search(header_value)
    return match.group(0) if match else None


def normalize_email(address: str) -> str:
    return address.strip().lower()


def truncate_text(text: str, max_length: int) -> str:
    """Truncate text to max_length, cutting on a word boundary when possible"""
    if len(text) <= max_length:
        return text

    truncated = text[:max_length - 3]
    last_space = truncated.rfind(" ")
    if last_space == -1:
        return truncated + "..."
    return truncated[:last_space] + "..."
