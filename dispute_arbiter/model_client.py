"""Seeded model evaluation via LiteLLM.

The arbiter targets an OpenAI-compatible deterministic-inference endpoint:
for a fixed model, inputs and ``seed``, the provider guarantees identical
output. Each ``ModelClient`` carries its own credential, so the arbiter and
an independent verifier can be provisioned separately.
"""

from __future__ import annotations

import logging
import re
import time

import litellm

from dispute_arbiter.config import settings
from dispute_arbiter.errors import ConfigurationError, ModelError
from dispute_arbiter.schemas import ModelResponse

logger = logging.getLogger(__name__)

# Suppress litellm's verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

_CHANNEL_PREFIX = re.compile(r"^<\|channel\|>.*?<\|message\|>", re.DOTALL)
_END_SUFFIX = re.compile(r"<\|end\|>$")


def strip_display_wrappers(text: str) -> str:
    """Strip the provider's ``<|channel|>...<|message|>CONTENT<|end|>`` wrapper.

    Commitments hash the result of this function, so changing it changes
    every response hash.
    """
    cleaned = _CHANNEL_PREFIX.sub("", text, count=1)
    cleaned = _END_SUFFIX.sub("", cleaned, count=1)
    return cleaned.strip()


class ModelClient:
    """Calls the model with a fixed seed and returns raw and display text."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        api_base: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: int | None = None,
    ) -> None:
        self.model = model if model is not None else settings.llm_model
        self._api_key = api_key if api_key is not None else settings.llm_api_key
        self._api_base = api_base if api_base is not None else settings.llm_api_base
        self._max_tokens = max_tokens if max_tokens is not None else settings.llm_max_tokens
        self._temperature = (
            temperature if temperature is not None else settings.llm_temperature
        )
        self._timeout = timeout if timeout is not None else settings.llm_timeout_seconds

    @classmethod
    def for_verifier(cls) -> ModelClient:
        """Client using the verifier's own credential rather than the arbiter's."""
        if not settings.verifier_api_key:
            raise ConfigurationError("ARBITER_VERIFIER_API_KEY is not configured")
        return cls(
            api_key=settings.verifier_api_key,
            api_base=settings.verifier_api_base or settings.llm_api_base,
        )

    def evaluate(self, system_prompt: str, user_prompt: str, seed: int) -> ModelResponse:
        kwargs = {}
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base

        t0 = time.monotonic()
        try:
            response = litellm.completion(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                seed=seed,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                timeout=self._timeout,
                **kwargs,
            )
        except Exception as exc:
            raise ModelError(f"Model evaluation failed: {exc}") from exc
        latency_ms = int((time.monotonic() - t0) * 1000)

        if not response.choices:
            raise ModelError("Model evaluation failed: response has no choices")
        raw_text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)

        if settings.audit_log_enabled:
            logger.info("Model raw response (%dms, seed=%d): %s", latency_ms, seed, raw_text)

        return ModelResponse(
            raw_text=raw_text,
            display_text=strip_display_wrappers(raw_text),
            latency_ms=latency_ms,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )
