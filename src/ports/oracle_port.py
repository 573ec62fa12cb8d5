"""Verification oracle port — abstract interface for judging collection photos.

The verification gate depends on this protocol, never on a specific model
provider. Implementations raise OracleParseError for every failure.
"""

from __future__ import annotations

from typing import Protocol

from src.data.models import Judgment


class VerificationOracle(Protocol):
    """Judges whether a photo shows the reported waste type and quantity."""

    async def judge(
        self,
        photo: bytes,
        expected_waste_type: str,
        expected_amount: str,
        mime_type: str = "image/jpeg",
    ) -> Judgment: ...
