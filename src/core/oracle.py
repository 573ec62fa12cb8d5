"""
WasteWise — Photo Verification Oracle.

Asks a multimodal LLM whether a collector's photo matches the reported waste
type and quantity, and turns its JSON reply into a Judgment.

The reply is untrusted: anything that doesn't validate into the exact
judgment shape raises OracleParseError, so the verification gate never
acts on a half-understood answer.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from src.core.errors import OracleParseError
from src.core.llm import complete_with_image
from src.data.models import Judgment

logger = logging.getLogger(__name__)


class OracleReply(BaseModel):
    """Expected JSON contract of the oracle.

    JSON example:
    {
        "wasteTypeMatch": true,
        "quantityMatch": false,
        "confidence": 0.82
    }
    """
    model_config = ConfigDict(populate_by_name=True)

    waste_type_match: StrictBool = Field(alias="wasteTypeMatch")
    quantity_match: StrictBool = Field(alias="quantityMatch")
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def require_number(cls, v: object) -> object:
        # bool is an int subclass; numeric strings are not numbers either
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError(f"confidence must be a JSON number, got {type(v).__name__}")
        return v


_SYSTEM_PROMPT = """\
You are an expert in waste management and recycling.
You verify photos submitted by waste collectors against the original report.
Return ONLY a JSON object. No markdown, no explanation, no extra text.
"""

_USER_PROMPT = """\
Analyze this image and provide:
1. Confirm if the waste type matches: {waste_type}
2. Estimate if the quantity matches: {amount}
3. Your confidence level in this assessment

Respond in JSON format like this:
{{"wasteTypeMatch": true/false, "quantityMatch": true/false, "confidence": number between 0 and 1}}
"""


def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code block delimiters from the LLM's raw response."""
    cleaned_text = raw_text.strip()
    if cleaned_text.startswith("```json"):
        cleaned_text = cleaned_text.removeprefix("```json")
    elif cleaned_text.startswith("```"):
        cleaned_text = cleaned_text.removeprefix("```")
    if cleaned_text.endswith("```"):
        cleaned_text = cleaned_text.removesuffix("```")
    return cleaned_text.strip()


def parse_judgment(raw: str | dict) -> Judgment:
    """Validate an oracle reply (raw text or decoded dict) into a Judgment.

    Raises:
        OracleParseError: the reply isn't JSON or doesn't match OracleReply.
    """
    if isinstance(raw, str):
        cleaned = _clean_llm_response(raw)
        try:
            raw = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            logger.error("Oracle reply is not JSON: %s — raw: '%s'", exc, cleaned)
            raise OracleParseError(f"Oracle reply is not JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise OracleParseError(f"Oracle reply must be a JSON object, got {type(raw).__name__}")

    try:
        reply = OracleReply.model_validate(raw)
    except ValidationError as exc:
        logger.error("Oracle reply has the wrong shape: %s", exc)
        raise OracleParseError(f"Oracle reply has the wrong shape: {exc}") from exc

    return Judgment(
        waste_type_match=reply.waste_type_match,
        quantity_match=reply.quantity_match,
        confidence=reply.confidence,
    )


class LLMOracle:
    """VerificationOracle backed by the configured multimodal LLM."""

    def __init__(self, timeout: float | None = None) -> None:
        if timeout is None:
            from src.config import settings
            timeout = settings.ORACLE_TIMEOUT_SECONDS
        self._timeout = timeout

    async def judge(
        self,
        photo: bytes,
        expected_waste_type: str,
        expected_amount: str,
        mime_type: str = "image/jpeg",
    ) -> Judgment:
        if not photo:
            raise OracleParseError("No photo supplied for verification")

        prompt = _USER_PROMPT.format(waste_type=expected_waste_type, amount=expected_amount)
        try:
            raw_text = await asyncio.wait_for(
                complete_with_image(
                    system=_SYSTEM_PROMPT,
                    prompt=prompt,
                    image=photo,
                    mime_type=mime_type,
                    max_tokens=128,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Oracle timed out after %.1fs", self._timeout)
            raise OracleParseError("Verification service timed out") from exc
        except Exception as exc:
            logger.error("Oracle call failed: %s", exc)
            raise OracleParseError(f"Verification service failed: {exc}") from exc

        logger.debug("Oracle raw response: %s", raw_text)
        judgment = parse_judgment(raw_text or "")
        logger.info(
            "Oracle judgment for %s / %s: type=%s qty=%s conf=%.2f",
            expected_waste_type, expected_amount,
            judgment.waste_type_match, judgment.quantity_match, judgment.confidence,
        )
        return judgment
