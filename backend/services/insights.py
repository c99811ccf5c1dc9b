"""
Summarization and tagging collaborator.

Uses OpenAI chat completions to shorten long content and suggest tags for
ingested records. Every call has a timeout; failures surface as
``ProviderTimeout`` or ``MalformedResponse`` so the ingestion pipeline can
fall back to truncation / adapter tags.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from config import settings
from connectors.errors import MalformedResponse, ProviderTimeout, TransientNetworkError

logger = logging.getLogger(__name__)

COLLABORATOR_TIMEOUT_SECONDS = 20.0
SUMMARY_MAX_WORDS = 200

SYSTEM_PROMPTS: dict[str, str] = {
    "meeting": (
        "You are an expert at summarizing meeting transcripts. Extract the key decisions, "
        "action items, and insights."
    ),
    "document": (
        "You are an expert at summarizing documents. Extract the main points, key insights, "
        "and actionable takeaways. Be concise but comprehensive."
    ),
    "slack": (
        "You are an expert at summarizing Slack conversations. Extract the key information, "
        "decisions, and action items. Filter out noise."
    ),
    "general": (
        "You are an expert at creating concise, useful summaries. Extract the most important "
        "information that would be valuable for future reference."
    ),
}

# record type -> prompt key
_PROMPT_FOR_TYPE: dict[str, str] = {
    "slack": "slack",
    "doc": "document",
    "meeting": "meeting",
}


class InsightsClient:
    """OpenAI-backed ``summarize``/``tag`` collaborator."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = COLLABORATOR_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key or settings.OPENAI_API_KEY
        self._model = model or settings.INSIGHTS_MODEL
        self._timeout = timeout
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-load the OpenAI client."""
        if self._client is None:
            if not self._api_key:
                raise ValueError("OPENAI_API_KEY is required for summarization")
            self._client = AsyncOpenAI(api_key=self._api_key, timeout=self._timeout, max_retries=0)
        return self._client

    async def summarize(self, content: str, record_type: str) -> str:
        """Summarize ``content`` in at most ~200 words."""
        prompt = SYSTEM_PROMPTS[_PROMPT_FOR_TYPE.get(record_type, "general")]
        result = await self._complete(
            system=f"{prompt} Keep summaries under {SUMMARY_MAX_WORDS} words.",
            user=f"Please summarize the following content:\n\n{content}",
            max_tokens=min(SUMMARY_MAX_WORDS * 2, 500),
        )
        summary = result.strip()
        if not summary:
            raise MalformedResponse("Summarizer returned empty text", "openai")
        return summary

    async def tag(self, content: str, existing_tags: list[str]) -> list[str]:
        """Suggest 3-5 lowercase hyphenated tags."""
        system = (
            "You are an expert at categorizing and tagging business content. "
            "Generate 3-5 relevant tags that help organize and find this content later. "
            'Use lowercase, hyphenated format (e.g., "customer-acquisition", "product-strategy"). '
        )
        if existing_tags:
            system += f"Consider these existing tags: {', '.join(existing_tags)}. "
        system += 'Return only a JSON array of strings: ["tag1", "tag2", "tag3"]'

        result = await self._complete(
            system=system,
            user=f"Generate tags for this content:\n\n{content}",
            max_tokens=100,
        )
        try:
            tags = json.loads(result)
        except ValueError as exc:
            raise MalformedResponse(f"Tagger returned non-JSON output: {result[:100]!r}", "openai") from exc
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise MalformedResponse("Tagger output is not a list of strings", "openai")
        return [t.strip().lower() for t in tags if t.strip()]

    async def _complete(self, system: str, user: str, max_tokens: int) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                max_tokens=max_tokens,
                temperature=0.3,
            )
        except openai.APITimeoutError as exc:
            raise ProviderTimeout("Insights request timed out", "openai") from exc
        except openai.APIConnectionError as exc:
            raise TransientNetworkError(f"Insights connection error: {exc}", "openai") from exc
        except openai.APIStatusError as exc:
            raise MalformedResponse(f"Insights API error: {exc.status_code}", "openai") from exc

        if not response.choices or not response.choices[0].message.content:
            raise MalformedResponse("Insights response has no content", "openai")
        return response.choices[0].message.content
