"""
Email category classification

Categories are a closed set loaded from configuration. The set is validated
again on every call because it can be replaced at runtime through the
settings endpoint.
"""
import logging
from typing import Any, Dict, Optional

from .config import validate_categories
from .errors import ClassificationError
from .models import DEFAULT_CATEGORY, LanguageModel
from .prompt_templates import PromptTemplates

logger = logging.getLogger(__name__)

CLASSIFICATION_SCHEMA_NAME = "email_category"


class EmailClassifier:
    """Classify messages into the configured category set"""

    def __init__(self, llm: LanguageModel, categories: Dict[str, str]):
        self.llm = llm
        self._categories = validate_categories(categories)

    @property
    def categories(self) -> Dict[str, str]:
        return dict(self._categories)

    def set_categories(self, categories: Dict[str, str]) -> None:
        """Replace the category set; raises ValueError if it is malformed"""
        self._categories = validate_categories(categories)
        logger.info(f"Email categories updated: {', '.join(self._categories)}")

    @staticmethod
    def build_schema(categories: Dict[str, str]) -> Dict[str, Any]:
        """JSON schema constraining the answer to one category name"""
        return {
            "type": "object",
            "properties": {
                "category": {
                    "type": "string",
                    "enum": list(categories.keys()),
                    "description": "The category that best describes the email",
                },
            },
            "required": ["category"],
        }

    async def classify_strict(self, subject: str, body: str) -> str:
        """
        Classify one message.

        Raises:
            ClassificationError: If the model call fails or the answer is not
                one of the configured categories
        """
        try:
            categories = validate_categories(self._categories)
        except ValueError as e:
            raise ClassificationError(f"Invalid category configuration: {e}") from e

        messages = PromptTemplates.build_classification_messages(categories, subject, body)
        try:
            result = await self.llm.generate(
                messages,
                schema=self.build_schema(categories),
                schema_name=CLASSIFICATION_SCHEMA_NAME,
            )
        except Exception as e:
            raise ClassificationError(f"Language model call failed: {e}") from e

        category: Optional[Any] = (result.structured or {}).get("category")
        if not isinstance(category, str) or category not in categories:
            raise ClassificationError(f"Model returned unknown category {category!r}")
        return category

    async def classify(self, subject: str, body: str) -> str:
        """Classify one message, falling back to the default category on failure"""
        try:
            return await self.classify_strict(subject, body)
        except ClassificationError as e:
            logger.warning(f"Classification failed, using '{DEFAULT_CATEGORY}': {e}")
            return DEFAULT_CATEGORY
