"""
Validation of raw text generator output.

The generator is asked for JSON but nothing guarantees it: the payload is
decoded against one of two schemas (continuation or conclusion) and any
violation is replaced by fixed fallback content with the same shape, so a
turn can always complete.
"""
import re
import json
import logging
from typing import Annotated, Any, List

from pydantic import BaseModel, StrictStr, StringConstraints, ValidationError, field_validator

from .models import StoryPayload

logger = logging.getLogger(__name__)

CHOICE_COUNT = 3
CHOICE_PLACEHOLDER = "…"

FALLBACK_CHOICES = ["Yes", "No", "Maybe"]
FALLBACK_QUESTION = "Try again?"
MALFORMED_STORY = "The story reached a confusing point!"
MALFORMED_CONCLUSION = "And they all lived happily ever after... (almost!)."
CALL_FAILURE_STORY = "Oops! The connection fizzled."

StoryText = Annotated[StrictStr, StringConstraints(strip_whitespace=True, min_length=1)]


class ContinuationSchema(BaseModel):
    story: StoryText
    question: StrictStr
    choices: List[Any]

    @field_validator("choices")
    @classmethod
    def exactly_three(cls, v: List[Any]) -> List[str]:
        choices = [c if isinstance(c, str) else json.dumps(c) for c in v[:CHOICE_COUNT]]
        while len(choices) < CHOICE_COUNT:
            choices.append(CHOICE_PLACEHOLDER)
        return choices


class ConclusionSchema(BaseModel):
    story: StoryText


def malformed_payload(is_final: bool) -> StoryPayload:
    if is_final:
        return StoryPayload(story=MALFORMED_CONCLUSION, is_final=True, fallback=True)
    return StoryPayload(
        story=MALFORMED_STORY,
        question=FALLBACK_QUESTION,
        choices=list(FALLBACK_CHOICES),
        fallback=True,
    )


def call_failure_payload(is_final: bool) -> StoryPayload:
    if is_final:
        return StoryPayload(story=CALL_FAILURE_STORY, is_final=True, fallback=True)
    return StoryPayload(
        story=CALL_FAILURE_STORY,
        question=FALLBACK_QUESTION,
        choices=list(FALLBACK_CHOICES),
        fallback=True,
    )


_CODE_FENCE = re.compile(r"```[ \t]*(?:json)?[ \t]*\r?\n?(.*?)(?:```|\Z)", re.IGNORECASE | re.DOTALL)


def _strip_code_fences(text: str) -> str:
    # Some models wrap JSON in markdown even in JSON mode, sometimes after a preamble
    if text.startswith("{"):
        return text
    match = _CODE_FENCE.search(text)
    if match is None:
        return text
    return match.group(1).strip()


def parse_story_response(raw: Any, is_final: bool) -> StoryPayload:
    if not isinstance(raw, str) or not raw.strip():
        logger.error(f"Empty or non-text response from text generator: {raw!r}")
        return malformed_payload(is_final)

    text = _strip_code_fences(raw.strip())
    try:
        data = json.loads(text)
    except ValueError as e:
        logger.error(f"Error parsing JSON response from AI: {e}. Raw string: {raw[:200]!r}")
        return malformed_payload(is_final)

    try:
        if is_final:
            conclusion = ConclusionSchema.model_validate(data)
            # question/choices are dropped even if the model sent them
            return StoryPayload(story=conclusion.story, is_final=True)
        continuation = ContinuationSchema.model_validate(data)
    except ValidationError as e:
        logger.error(f"Parsed JSON does not have the expected structure: {e.errors(include_url=False)}")
        return malformed_payload(is_final)

    return StoryPayload(
        story=continuation.story,
        question=continuation.question,
        choices=continuation.choices,
    )
