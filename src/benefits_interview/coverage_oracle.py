"""Client for the language-model coverage oracle.

The oracle judges which interview sections were substantively discussed. It
is slow and fallible, so every failure degrades to an all-false coverage
value paired with a typed error instead of propagating.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, cast

from .config import ModelSettings
from .maf_client import ChatClient, ChatMessage, MAFChatClient
from .models import SectionCoverage
from .prompts import COVERAGE_SYSTEM_PROMPT, build_coverage_request

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class CoverageOracleError(RuntimeError):
    """Base error for oracle failures."""


class OracleUnavailableError(CoverageOracleError):
    """Raised when the oracle could not be reached."""


class OracleTimeoutError(CoverageOracleError):
    """Raised when the oracle did not answer in time."""


class OracleResponseError(CoverageOracleError):
    """Raised when the oracle answered with non-parseable content."""


@dataclass(frozen=True, slots=True)
class CoverageEvaluation:
    """Result of a single oracle evaluation."""

    coverage: SectionCoverage
    error: Optional[CoverageOracleError] = None
    model_used: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.error is not None


class CoverageOracleClient:
    """Asks the oracle for section coverage, with a single fallback retry."""

    def __init__(
        self,
        primary: ChatClient,
        fallback: Optional[ChatClient] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: ModelSettings) -> "CoverageOracleClient":
        primary = MAFChatClient(settings)
        fallback: Optional[ChatClient] = None
        if settings.fallback_model:
            fallback = MAFChatClient(settings, model=settings.fallback_model)
        return cls(primary, fallback, timeout=settings.request_timeout)

    async def evaluate(self, transcript_text: str) -> CoverageEvaluation:
        """Return coverage flags for the transcript; never raises."""

        if not transcript_text or not transcript_text.strip():
            return CoverageEvaluation(coverage=SectionCoverage.empty())

        messages = [
            ChatMessage(role="system", content=COVERAGE_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=build_coverage_request(transcript_text),
            ),
        ]
        clients: List[ChatClient] = [self._primary]
        if self._fallback is not None:
            clients.append(self._fallback)

        last_error: CoverageOracleError = OracleUnavailableError(
            "no oracle attempt made"
        )
        for client in clients:
            try:
                content = await self._request(client, messages)
                coverage = self.parse_sections(content)
            except CoverageOracleError as exc:
                logger.warning(
                    "Coverage oracle attempt with %s failed: %s",
                    client.model_name,
                    exc,
                )
                last_error = exc
                continue
            return CoverageEvaluation(
                coverage=coverage,
                model_used=client.model_name,
            )

        return CoverageEvaluation(
            coverage=SectionCoverage.empty(),
            error=last_error,
        )

    async def _request(
        self,
        client: ChatClient,
        messages: List[ChatMessage],
    ) -> str:
        try:
            response = await asyncio.wait_for(
                client.complete(messages),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise OracleTimeoutError(
                f"Coverage oracle timed out after {self._timeout:.1f}s"
            ) from exc
        except Exception as exc:  # noqa: BLE001 # pylint: disable=broad-except
            raise OracleUnavailableError(
                f"Coverage oracle request failed: {exc}"
            ) from exc
        return response.content

    @staticmethod
    def parse_sections(raw: str) -> SectionCoverage:
        """Parse the oracle body, defaulting absent or malformed keys."""

        payload = _extract_json_object(raw)
        if payload is None:
            raise OracleResponseError(
                "Coverage oracle returned non-JSON content"
            )
        sections = payload.get("sections")
        if not isinstance(sections, dict):
            logger.debug("Oracle payload missing 'sections': %s", payload)
            return SectionCoverage.empty()
        return SectionCoverage.from_mapping(cast(Dict[str, Any], sections))


def _extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    text = (raw or "").strip()
    if not text:
        return None
    candidate = text
    if not candidate.startswith("{"):
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            return None
        candidate = text[start:end + 1]
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return cast(Dict[str, Any], payload)
