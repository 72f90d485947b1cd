"""Completion service used for classification, image choice and titles.

The pipeline only depends on the :class:`CompletionService` protocol: a
``complete`` call taking a prompt and returning a parsed JSON object.
:class:`OpenAICompletionService` implements it on top of the OpenAI chat
completions API with JSON responses; tests substitute simple fakes.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

from openai import OpenAI, OpenAIError

from src import config
from src.crawler.utils import mask_secret

logger = logging.getLogger(__name__)


class CompletionServiceError(Exception):
    """Completion call failed, was not configured, or returned bad JSON."""

    pass


class CompletionService(Protocol):
    def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 800,
    ) -> dict[str, Any]: ...


class OpenAICompletionService:
    """JSON-mode chat completions against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        timeout: float | None = None,
        base_url: str | None = None,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self.model = model or config.COMPLETION_MODEL
        self.timeout = timeout if timeout is not None else config.COMPLETION_TIMEOUT
        self.base_url = base_url if base_url is not None else config.OPENAI_BASE_URL
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise CompletionServiceError("OPENAI_API_KEY not configured")
            logger.info(
                "Creating OpenAI client (model=%s, key=%s)",
                self.model,
                mask_secret(self.api_key),
            )
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=1,
            )
        return self._client

    def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 800,
    ) -> dict[str, Any]:
        client = self._get_client()
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            raise CompletionServiceError(f"Completion request failed: {exc}") from exc

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            raise CompletionServiceError("Completion response had no choices") from exc

        try:
            parsed = json.loads(content or "")
        except ValueError as exc:
            raise CompletionServiceError(
                f"Completion returned invalid JSON: {exc}"
            ) from exc

        if not isinstance(parsed, dict):
            raise CompletionServiceError("Completion JSON was not an object")
        return parsed
