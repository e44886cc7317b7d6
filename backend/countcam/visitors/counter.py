"""Gemini-backed visitor counter for entrance videos."""
import asyncio
import base64
import binascii
import logging
import re
from typing import Any, Dict, Optional, Tuple

from google import genai
from google.genai import types
from pydantic import ValidationError

from countcam.visitors.exceptions import ModelOutputError
from countcam.visitors.schemas import CountResult, Direction, ModelCountOutput

logger = logging.getLogger(__name__)

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.*)$", re.DOTALL)

COUNTING_PROMPT = """You are an expert at counting distinct people in video footage by their direction of movement. Give the most precise count you can for the requested direction.

1. Identifying people
   * Count only clearly identifiable people: the head and most of the torso are visible and the path of movement can be followed for a sustained period.
   * A person who is briefly hidden by others or by objects and then re-emerges is still the same person.
   * Never count animals, objects or shadows.
   * Count adults and children walking on their own. Do not count infants being carried.

2. Direction and counting
   * Direction to count: '{direction}'.
   * Count only people who move unambiguously and continuously in the '{direction}' direction across the entrance or a significant portion of the view.
   * Count each person once for that pass. Movement in the other direction is ignored.

3. Exclusions
   * People standing still or loitering for most of their appearance.
   * People who only appear at the edge of the frame, or whose path is too short to judge direction.
   * People whose direction is erratic or ambiguous.
   * Double counts of the same person.

4. Video quality
   * If the footage is too blurry, dark, distant or obstructed for a confident count, or nobody moves as specified, report 0.
   * Precision matters more than recall: when in doubt, do not count.

Respond with a JSON object with exactly two keys:
  "visitorCount": the number of distinct people counted,
  "countedDirection": the direction you were given ("{direction}").

Example: {{"visitorCount": 12, "countedDirection": "{direction}"}}
"""

COUNT_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "visitorCount": {"type": "INTEGER"},
        "countedDirection": {
            "type": "STRING",
            "enum": [d.value for d in Direction],
        },
    },
    "required": ["visitorCount", "countedDirection"],
}


def build_data_uri(mime_type: str, data: bytes) -> str:
    """Encode raw video bytes as a base64 data URI."""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def parse_data_uri(data_uri: str) -> Tuple[str, bytes]:
    """Split a base64 data URI into its MIME type and decoded bytes."""
    match = DATA_URI_RE.match(data_uri)
    if not match:
        raise ValueError("Expected a data URI of the form 'data:<mimetype>;base64,<data>'")
    try:
        data = base64.b64decode(match.group("payload"), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    return match.group("mime"), data


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _response_text(response: Any) -> Optional[str]:
    """Concatenate the text parts of the first candidate, if any."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    texts = [part.text for part in parts if getattr(part, "text", None)]
    return "".join(texts) if texts else None


def _diagnostics(response: Any) -> Dict[str, Any]:
    """Collect block/finish/safety information from a Gemini response."""
    details: Dict[str, Any] = {}

    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None)
    if block_reason:
        details["block_reason"] = _enum_value(block_reason)

    candidates = getattr(response, "candidates", None) or []
    if candidates:
        candidate = candidates[0]
        finish_reason = getattr(candidate, "finish_reason", None)
        if finish_reason:
            details["finish_reason"] = _enum_value(finish_reason)
        ratings = getattr(candidate, "safety_ratings", None) or []
        if ratings:
            details["safety_ratings"] = [
                {
                    "category": _enum_value(getattr(r, "category", None)),
                    "probability": _enum_value(getattr(r, "probability", None)),
                    "blocked": bool(getattr(r, "blocked", False)),
                }
                for r in ratings
            ]
    return details


class VisitorCounter:
    """Counts people moving in one direction through a video using Gemini."""

    def __init__(
        self,
        model: str,
        api_key: str = "",
        timeout_seconds: float = 360,
        client: Any = None,
    ):
        self.model = model
        self.timeout_seconds = timeout_seconds
        if client is None:
            client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(timeout=int(timeout_seconds * 1000)),
            )
        self._client = client

    def _build_request(self, video_data_uri: str, direction: Direction):
        mime_type, video_bytes = parse_data_uri(video_data_uri)
        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part.from_bytes(data=video_bytes, mime_type=mime_type),
                    types.Part.from_text(text=COUNTING_PROMPT.format(direction=direction.value)),
                ],
            )
        ]
        config = types.GenerateContentConfig(
            temperature=0.0,
            response_mime_type="application/json",
            response_schema=COUNT_RESPONSE_SCHEMA,
        )
        return contents, config

    async def count_visitors(self, video_data_uri: str, direction: Direction) -> CountResult:
        """Make exactly one model call and validate its structured output.

        Raises:
            ModelOutputError: the call failed, timed out, was blocked, or returned
                JSON that does not match the expected schema.
        """
        try:
            contents, config = self._build_request(video_data_uri, direction)
        except ValueError as e:
            raise ModelOutputError(f"Invalid video data URI: {e}") from e

        logger.info(f"Requesting {direction.value} count from {self.model}")
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ModelOutputError(
                f"Model call timed out after {self.timeout_seconds} seconds."
            ) from e
        except Exception as e:
            logger.exception(f"Model call failed: {e}")
            raise ModelOutputError(f"Model call failed: {e}") from e

        text = _response_text(response)
        if not text:
            details = _diagnostics(response)
            message = "Model did not return valid structured output or was blocked."
            if "finish_reason" in details:
                message += f" Finish reason: {details['finish_reason']}."
            if "block_reason" in details:
                message += f" Block reason: {details['block_reason']}."
            raise ModelOutputError(message, details)

        try:
            output = ModelCountOutput.model_validate_json(text)
        except ValidationError as e:
            details = _diagnostics(response)
            details["received"] = text
            details["errors"] = e.errors(include_url=False, include_context=False)
            raise ModelOutputError("Model output validation error.", details) from e

        mismatch = output.counted_direction != direction
        if mismatch:
            logger.warning(
                f"Model countedDirection ({output.counted_direction.value}) does not match "
                f"requested direction ({direction.value})"
            )

        return CountResult(
            visitor_count=output.visitor_count,
            counted_direction=output.counted_direction,
            requested_direction=direction,
            direction_mismatch=mismatch,
        )
