"""Conversation metadata generation (title, summary, tags, next questions).

This module provides an abstract interface for the LLM collaborator, with an
Anthropic-backed implementation and a mock generator for testing.
"""

import json
import logging
from abc import ABC, abstractmethod

from anthropic import AsyncAnthropic
from pydantic import ValidationError

from chatsphere.conversation.models import Conversation, ConversationMetadata

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-haiku-20241022"


class MetadataGenerationError(Exception):
    """Raised when metadata generation fails."""


def prepare_contents(conversation: Conversation) -> list[dict]:
    """Visible text of the conversation, without thoughts or hidden parts."""
    contents = []
    for message in conversation:
        if message.is_deleted:
            continue
        texts = [
            part.text
            for part in message.parts
            if part.text and not part.thought and not part.hide and not part.is_deleted
        ]
        if texts:
            contents.append({"role": message.role, "texts": texts})
    return contents


class MetadataGenerator(ABC):
    """Abstract interface for generating conversation metadata."""

    @abstractmethod
    async def generate_metadata(
        self,
        conversation: Conversation,
        current_title: str | None = None,
        current_tags: list[str] | None = None,
    ) -> ConversationMetadata:
        """Generate metadata for a conversation.

        Args:
            conversation: Conversation to describe
            current_title: Title to keep if it still fits
            current_tags: Tags to keep if they still fit

        Returns:
            Generated metadata; defaults when there is no visible text

        Raises:
            MetadataGenerationError: If generation fails
        """


class MockMetadataGenerator(MetadataGenerator):
    """Mock generator for testing.

    Returns fixed metadata, or raises when configured with ``fail=True``.
    """

    def __init__(self, metadata: ConversationMetadata | None = None, fail: bool = False):
        self.metadata = metadata or ConversationMetadata(
            title="Mock Title", summary="Mock summary", tags=["mock"]
        )
        self.fail = fail
        self.calls: list[Conversation] = []

    async def generate_metadata(
        self,
        conversation: Conversation,
        current_title: str | None = None,
        current_tags: list[str] | None = None,
    ) -> ConversationMetadata:
        self.calls.append(conversation)
        if self.fail:
            raise MetadataGenerationError("Mock generator configured to fail")
        if not prepare_contents(conversation):
            return ConversationMetadata()
        return self.metadata.model_copy(deep=True)


class LLMMetadataGenerator(MetadataGenerator):
    """Generate metadata using a Claude model."""

    def __init__(self, client: AsyncAnthropic | None = None, model: str = DEFAULT_MODEL):
        """Initialize LLM metadata generator.

        Args:
            client: Anthropic client (will create one if not provided)
            model: Model name
        """
        self.client = client or AsyncAnthropic()
        self.model = model

    async def generate_metadata(
        self,
        conversation: Conversation,
        current_title: str | None = None,
        current_tags: list[str] | None = None,
    ) -> ConversationMetadata:
        contents = prepare_contents(conversation)
        if not contents:
            return ConversationMetadata()

        prompt = self._build_prompt(contents, current_title, current_tags or [])
        logger.debug(f"Generating metadata for {len(contents)} message(s)")

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=1024,
                messages=[{"role": "user", "content": prompt}],
            )
            text = response.content[0].text
        except Exception as e:
            logger.error(f"Metadata generation request failed: {e}")
            raise MetadataGenerationError(f"LLM request failed: {e}") from e

        metadata = self._parse_response(text)
        logger.info(f"Generated conversation title: {metadata.title}")
        return metadata

    def _parse_response(self, text: str) -> ConversationMetadata:
        body = text.strip()
        if body.startswith("```"):
            body = body.strip("`")
            body = body.split("\n", 1)[1] if "\n" in body else body
        try:
            metadata = ConversationMetadata.model_validate(json.loads(body))
        except (json.JSONDecodeError, ValidationError) as e:
            raise MetadataGenerationError(f"Unparseable metadata response: {e}") from e
        metadata.title = metadata.title.strip() or "New Conversation"
        return metadata

    def _build_prompt(
        self, contents: list[dict], current_title: str | None, current_tags: list[str]
    ) -> str:
        transcript = "\n\n".join(
            f"[{entry['role']}]\n" + "\n".join(entry["texts"]) for entry in contents
        )
        keep = ""
        if current_title:
            keep += f"\nCurrent title: {current_title} (keep it if it still fits)"
        if current_tags:
            keep += f"\nCurrent tags: {', '.join(current_tags)} (keep the ones that still fit)"
        return f"""Describe the following conversation between a user and an assistant.
{keep}

=== CONVERSATION ===
{transcript}

=== INSTRUCTIONS ===
Respond with ONLY a JSON object with these keys:
- "title": concise, descriptive, fewer than 7 words
- "summary": one sentence
- "tags": up to 5 short lowercase topic tags
- "nextQuestions": 3 follow-up questions the user might ask next"""
