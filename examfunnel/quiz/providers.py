"""
Question providers consumed by the funnel.

Three sources, tried in order by the orchestrator:
- CuratedPoolProvider: hand-reviewed gold questions per module
- CachedPoolProvider: cached (prefab) question set per study guide
- GenerationProvider: on-demand generation from study content

HttpGenerationProvider is the httpx-backed generation client.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger
from pydantic import BaseModel, field_validator

from examfunnel.config import Settings, get_settings
from examfunnel.core.models import GuideItem, Question, RawCandidate
from examfunnel.errors import ProviderError


class GenerationPreferences(BaseModel):
    """Knobs forwarded to the generation provider."""

    question_count: int | None = 10
    question_type: str = "MULTIPLE_CHOICE"
    difficulty: str = "mixed"
    custom_instructions: str = ""
    auto_question_count: bool = False

    @field_validator("question_count", mode="before")
    @classmethod
    def _lenient_count(cls, value: Any) -> int | None:
        # Non-numeric counts fall back to the configured default downstream.
        if isinstance(value, bool):
            return None
        try:
            return int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None

    @field_validator("custom_instructions", mode="before")
    @classmethod
    def _none_to_blank(cls, value: Any) -> str:
        return "" if value is None else str(value)


def normalize_prefab_questions(questions: Iterable[Question]) -> list[Question]:
    """Copy of ``questions`` with ``prefab_index`` filled from position where missing."""
    return [
        question if question.prefab_index is not None else question.model_copy(update={"prefab_index": index})
        for index, question in enumerate(questions or [])
    ]


def active_prefab_questions(questions: Iterable[Question]) -> list[Question]:
    """Non-retired questions, one per prefab slot (later entries win), in slot order."""
    active_by_index: dict[int, Question] = {}
    for question in normalize_prefab_questions(questions):
        if question.is_retired:
            continue
        active_by_index[question.prefab_index or 0] = question
    return [active_by_index[index] for index in sorted(active_by_index)]


@dataclass
class CachedSet:
    """Cached question bank built from one study guide."""

    guide_id: str
    guide_title: str = ""
    items: list[GuideItem] = field(default_factory=list)
    questions: list[Question] = field(default_factory=list)

    def active_questions(self) -> list[Question]:
        return active_prefab_questions(self.questions)


@runtime_checkable
class CuratedPoolProvider(Protocol):
    """Hand-reviewed question bank keyed by module."""

    async def get_approved(self, module_id: str) -> list[Question]:
        ...


@runtime_checkable
class CachedPoolProvider(Protocol):
    """Per-guide cached question sets."""

    async def get_cached(self, guide_id: str) -> CachedSet | None:
        ...


@runtime_checkable
class GenerationProvider(Protocol):
    """Generates question payloads from study content."""

    async def generate(
        self,
        content: str,
        preferences: GenerationPreferences,
    ) -> list[RawCandidate | dict[str, Any]]:
        ...


class HttpGenerationProvider:
    """HTTP client for a question generation service."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        timeout_ms: int = 45000,
        retry_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the generation client.

        Args:
            api_url: Base URL of the generation service
            api_key: Optional bearer token
            timeout_ms: Request timeout in milliseconds
            retry_attempts: Number of attempts on timeouts and 5xx errors
            client: Pre-built AsyncClient (tests inject a MockTransport here)
        """
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_ms / 1000.0
        self.retry_attempts = max(1, retry_attempts)
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds),
            follow_redirects=True,
            headers=headers,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> HttpGenerationProvider:
        settings = settings or get_settings()
        return cls(
            api_url=settings.generation_api_url,
            api_key=settings.generation_api_key,
            timeout_ms=int(settings.provider_timeout_seconds * 1000),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def generate(
        self,
        content: str,
        preferences: GenerationPreferences,
    ) -> list[RawCandidate | dict[str, Any]]:
        """
        Request generated questions with retry on transient failures.

        Returns:
            Raw question payloads; they still have to pass the answer-key gate

        Raises:
            ProviderError: On 4xx responses, malformed bodies, or exhausted retries
        """
        payload = {"content": content, "preferences": preferences.model_dump()}
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(f"{self.api_url}/generate", json=payload)
                response.raise_for_status()
                try:
                    data = response.json()
                except ValueError as e:
                    raise ProviderError("generation response is not valid JSON") from e
                return self._parse(data)

            except httpx.TimeoutException as e:
                last_error = e
                wait_time = 2**attempt
                logger.warning(
                    f"Generation timeout on attempt {attempt + 1}/{self.retry_attempts}. "
                    f"Retrying in {wait_time}s..."
                )
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(wait_time)

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code >= 500:
                    wait_time = 2**attempt
                    logger.warning(
                        f"Generation server error {e.response.status_code} on attempt "
                        f"{attempt + 1}/{self.retry_attempts}. Retrying in {wait_time}s..."
                    )
                    if attempt < self.retry_attempts - 1:
                        await asyncio.sleep(wait_time)
                else:
                    logger.error(f"Generation client error: {e.response.status_code}")
                    raise ProviderError(f"generation rejected with HTTP {e.response.status_code}") from e

            except httpx.RequestError as e:
                last_error = e
                wait_time = 2**attempt
                logger.warning(
                    f"Generation request error on attempt {attempt + 1}/{self.retry_attempts}: {e}. "
                    f"Retrying in {wait_time}s..."
                )
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(wait_time)

        raise ProviderError(f"generation failed after {self.retry_attempts} attempts: {last_error}")

    @staticmethod
    def _parse(data: Any) -> list[RawCandidate | dict[str, Any]]:
        if not isinstance(data, dict) or not isinstance(data.get("questions"), list):
            raise ProviderError("generation response has no 'questions' list")
        return [item for item in data["questions"] if isinstance(item, dict)]
