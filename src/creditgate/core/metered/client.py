"""MeteredClient -- the upstream model call behind ``/api/ai/proxy``."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass
from typing import Annotated, Literal

import openai
from fastapi import Depends, FastAPI, Request
from opentelemetry import trace

from creditgate.configs.config import AppConfig, ConfigurationError, get_app_config
from creditgate.configs.system import LLMConfig
from creditgate.infra.lifespan import get_app
from creditgate.infra.telemetry import ATTR_UPSTREAM_MODEL

from .retry import RetryPolicy, UpstreamError

logger = logging.getLogger(__name__)


class ModelNotAllowed(ValueError):
    """Raised when the caller asks for a model outside the allow list."""


@dataclass(frozen=True)
class Turn:
    """One prior exchange; ``model`` turns are sent as ``assistant``."""

    role: Literal["user", "model"]
    text: str


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    tokens_used: int


def _is_retryable(exc: BaseException) -> bool:
    # Client errors (bad request, auth) fail the same way twice.
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code == 429 or exc.status_code >= 500
    return not isinstance(exc, (ModelNotAllowed, ConfigurationError))


class MeteredClient:
    """OpenAI-compatible chat completion wrapped in a ``RetryPolicy``.

    The SDK's own retries are disabled so attempt counting, deadlines
    and backoff all belong to the policy.
    """

    def __init__(self, config: LLMConfig, policy: RetryPolicy | None = None) -> None:
        self._config = config
        self._policy = policy or RetryPolicy(
            max_attempts=config.max_attempts,
            backoff=config.backoff,
            timeout=config.timeout,
            retryable=_is_retryable,
        )
        self._openai = openai.AsyncOpenAI(
            base_url=config.endpoint,
            api_key=config.api_key or "unused",
            max_retries=0,
        )

    def resolve_model(self, model: str | None) -> str:
        name = model or self._config.default_model
        allowed = self._config.allowed_models
        if allowed and name not in allowed:
            raise ModelNotAllowed(f"Model {name!r} is not available")
        return name

    async def generate(
        self, message: str, history: Sequence[Turn] = (), model: str | None = None
    ) -> Completion:
        """Send *message* after *history* and return the reply text.

        Raises:
            ConfigurationError: no upstream API key configured.
            ModelNotAllowed: *model* is outside the allow list.
            UpstreamTimeout / UpstreamError: after the last attempt.
        """
        if not self._config.api_key:
            raise ConfigurationError("AI service not configured")
        name = self.resolve_model(model)

        messages = [
            {"role": "assistant" if turn.role == "model" else "user", "content": turn.text}
            for turn in history
        ]
        messages.append({"role": "user", "content": message})

        async def call() -> Completion:
            trace.get_current_span().set_attribute(ATTR_UPSTREAM_MODEL, name)
            response = await self._openai.chat.completions.create(
                model=name,
                messages=messages,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            )
            text = response.choices[0].message.content if response.choices else None
            if not text:
                raise UpstreamError("Empty response from AI model")
            usage = response.usage
            tokens = usage.total_tokens if usage is not None else len(text)
            return Completion(text=text, model=name, tokens_used=tokens)

        completion = await self._policy.run(call)
        logger.info(
            "Upstream %s answered (%d chars)",
            name,
            len(completion.text),
        )
        return completion

    async def aclose(self) -> None:
        await self._openai.close()


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_metered_client(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    client = MeteredClient(config.llm)
    app.state.metered_client = client
    if not config.llm.api_key:
        logger.warning("llm.api_key is empty; /api/ai/proxy will answer 501")
    yield
    await client.aclose()


def get_metered_client(request: Request) -> MeteredClient:
    return request.app.state.metered_client
