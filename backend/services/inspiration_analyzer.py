"""
Inspiration analyzer.

Turns free-form conversation text into an InspirationAnalysis by asking the
upstream model for a strict JSON judgment, validating it, and falling back to
a deterministic content-derived heuristic whenever the model call or its
output cannot be used. ``analyze`` never raises.
"""

import json
import logging
import re
from typing import Any, List, Optional
from pydantic import BaseModel, ValidationError, field_validator

from config import (
    TITLE_MAX_LENGTH,
    SUMMARY_MAX_LENGTH,
    MAX_TAGS,
    FALLBACK_TITLE_LENGTH,
    FALLBACK_SUMMARY_LENGTH,
    FALLBACK_TAG_COUNT,
)
from models.conversation import ConversationTurn, ROLE_USER
from models.inspiration import (
    InspirationAnalysis,
    VALID_CATEGORIES,
    DEFAULT_CATEGORY,
    CATEGORY_DESCRIPTIONS,
)
from services.upstream_client import UpstreamClient, UpstreamError, UpstreamParseError

logger = logging.getLogger(__name__)

FALLBACK_TAG = "inspiration"
DEFAULT_TITLE = "Untitled inspiration"
ELLIPSIS = "..."

SENTENCE_DELIMITERS = re.compile(r"[.!?。！？]")
JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


class AnalysisPayload(BaseModel):
    """Schema of the JSON object the model is asked to return."""
    title: str
    summary: str
    categories: Any
    tags: Any

    @field_validator("title", "summary", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        if not value:
            raise ValueError("must be present and non-empty")
        return str(value)

    @field_validator("categories", "tags", mode="before")
    @classmethod
    def _require_value(cls, value: Any) -> Any:
        if not value:
            raise ValueError("must be present and non-empty")
        return value


class InspirationAnalyzer:
    """Extracts title, summary, categories and tags from conversation content."""

    def __init__(self, upstream_client: UpstreamClient, model: Optional[str] = None):
        """
        Args:
            upstream_client: Client used for all model calls
            model: Model identifier (defaults to the client's default model)
        """
        self.upstream_client = upstream_client
        self.model = model

    async def analyze(self, content: str) -> InspirationAnalysis:
        """
        Analyze content into an InspirationAnalysis.

        Any upstream, parse, or validation failure degrades to
        create_fallback_analysis(content).
        """
        prompt = self.build_analysis_prompt(content)

        try:
            response = await self.upstream_client.complete(
                [ConversationTurn(role=ROLE_USER, content=prompt)],
                model=self.model
            )
            if not response.text:
                raise UpstreamParseError("No analysis response received")

            analysis = self.parse_analysis_response(response.text)
            logger.info(
                f"Analysis succeeded: categories={analysis.categories}, tags={len(analysis.tags)}"
            )
            return analysis

        except UpstreamError as e:
            logger.warning(
                f"Analysis failed, using fallback: {e.error.message}",
                extra={"error_code": e.error.code}
            )
        except Exception as e:
            logger.error(f"Unexpected analysis error, using fallback: {e}", exc_info=True)

        return self.create_fallback_analysis(content)

    @staticmethod
    def build_analysis_prompt(content: str) -> str:
        """Build the analysis prompt with the category rubric."""
        rubric = "\n".join(
            f"- {category}: {description}"
            for category, description in CATEGORY_DESCRIPTIONS.items()
        )
        categories = ", ".join(VALID_CATEGORIES)

        return f"""You are a professional inspiration analysis assistant. Analyze the content below, extract its core ideas and key information, and return the result in the required format.

Content:
{content}

Return the analysis strictly as the following JSON object, with no other text:

{{
  "title": "a concise, appealing title for this inspiration (10-20 characters)",
  "summary": "the core points and value of this inspiration (50-100 characters)",
  "categories": ["the 1-2 best fitting categories from: {categories}"],
  "tags": ["3-5 of the most relevant keyword tags"]
}}

Category guide:
{rubric}

Make sure the response is valid JSON."""

    @staticmethod
    def parse_analysis_response(response: str) -> InspirationAnalysis:
        """
        Decode and normalize a model reply.

        Raises:
            UpstreamParseError: No JSON object, invalid JSON, or missing fields
        """
        match = JSON_OBJECT.search(response.strip())
        if not match:
            raise UpstreamParseError("No JSON object in analysis response")

        try:
            raw = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise UpstreamParseError(f"Invalid JSON in analysis response: {e}") from e

        if not isinstance(raw, dict):
            raise UpstreamParseError("Analysis response is not a JSON object")

        try:
            payload = AnalysisPayload.model_validate(raw)
        except ValidationError as e:
            raise UpstreamParseError(
                "Missing required fields in analysis",
                details={"errors": e.errors(include_url=False, include_context=False)}
            ) from e

        tags = [str(tag) for tag in payload.tags[:MAX_TAGS]] if isinstance(payload.tags, list) else []

        return InspirationAnalysis(
            title=payload.title[:TITLE_MAX_LENGTH],
            summary=payload.summary[:SUMMARY_MAX_LENGTH],
            categories=filter_categories(payload.categories),
            tags=tags
        )

    @staticmethod
    def create_fallback_analysis(content: str) -> InspirationAnalysis:
        """Deterministic analysis derived from the content alone."""
        first_sentence = SENTENCE_DELIMITERS.split(content, maxsplit=1)[0].strip()
        if not first_sentence:
            first_sentence = content.strip()

        if first_sentence:
            title = _truncate(first_sentence, FALLBACK_TITLE_LENGTH)
        else:
            title = DEFAULT_TITLE

        summary = _truncate(content, FALLBACK_SUMMARY_LENGTH) if content.strip() else title

        return InspirationAnalysis(
            title=title,
            summary=summary,
            categories=[DEFAULT_CATEGORY],
            tags=significant_words(content)[:FALLBACK_TAG_COUNT] + [FALLBACK_TAG]
        )

    async def extract_tags(self, content: str) -> List[str]:
        """Ask the model for keyword tags; fall back to the leading words of content."""
        prompt = f"""Extract the 3-5 most important keyword tags from the content below and return them as a JSON array:

Content: {content}

Response format: ["tag1", "tag2", "tag3"]"""

        try:
            response = await self.upstream_client.complete(
                [ConversationTurn(role=ROLE_USER, content=prompt)],
                model=self.model
            )
            tags = _parse_json_array(response.text)
            if tags:
                return [str(tag) for tag in tags[:MAX_TAGS]]
            logger.warning("Tag extraction returned no tags, using fallback")
        except UpstreamError as e:
            logger.warning(f"Tag extraction failed, using fallback: {e.error.message}")
        except Exception as e:
            logger.error(f"Unexpected tag extraction error, using fallback: {e}", exc_info=True)

        return significant_words(content)[:FALLBACK_TAG_COUNT]

    async def categorize_content(self, content: str) -> List[str]:
        """Ask the model for 1-2 categories; fall back to the default category."""
        options = "\n".join(f"- {category}" for category in VALID_CATEGORIES)
        prompt = f"""Analyze the content below and choose the 1-2 best fitting categories from these 4:
{options}

Content: {content}

Response format: ["category1", "category2"]"""

        try:
            response = await self.upstream_client.complete(
                [ConversationTurn(role=ROLE_USER, content=prompt)],
                model=self.model
            )
            return filter_categories(_parse_json_array(response.text))
        except UpstreamError as e:
            logger.warning(f"Categorization failed, using default: {e.error.message}")
        except Exception as e:
            logger.error(f"Unexpected categorization error, using default: {e}", exc_info=True)

        return [DEFAULT_CATEGORY]


def filter_categories(categories: Any) -> List[str]:
    """Keep known categories in order, once each; never return an empty list."""
    if not isinstance(categories, list):
        return [DEFAULT_CATEGORY]

    filtered: List[str] = []
    for category in categories:
        if category in VALID_CATEGORIES and category not in filtered:
            filtered.append(category)

    return filtered or [DEFAULT_CATEGORY]


def significant_words(content: str) -> List[str]:
    """Whitespace-delimited tokens longer than one character."""
    return [word for word in content.split() if len(word) > 1]


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + (ELLIPSIS if len(text) > limit else "")


def _parse_json_array(text: str) -> List[Any]:
    match = JSON_ARRAY.search(text or "")
    if not match:
        raise UpstreamParseError("No JSON array in response")
    try:
        value = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise UpstreamParseError(f"Invalid JSON array in response: {e}") from e
    if not isinstance(value, list):
        raise UpstreamParseError("Response is not a JSON array")
    return value
