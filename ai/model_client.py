"""
Reasoning-service clients (OpenAI, Anthropic, mock).

Every call is plain text generation over a fully pre-assembled prompt:
no tools, no conversation history, explicit timeout.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from core.exceptions import ConfigurationError
from infra.metrics import MetricsRecorder

log = logging.getLogger(__name__)


class ModelClient(ABC):
    """Abstract base class for reasoning-service clients."""

    model: str = ""

    def __init__(self, metrics: Optional[MetricsRecorder] = None, caller: str = "sentinel"):
        self.metrics = metrics
        self.caller = caller

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        history_limit: int = 0,
        tools_allowed: bool = False,
    ) -> str:
        """
        Generate a completion.

        Args:
            system_prompt: Minimal instruction block
            user_prompt: Rendered context document
            history_limit: Prior turns to include; always 0 for the loops
            tools_allowed: Must be False; the trading loops never grant tools

        Returns:
            Raw model text

        Raises:
            ValueError: If tools are requested
            Exception: Provider errors and timeouts propagate
        """
        if tools_allowed:
            raise ValueError("Tool access is not permitted for reasoning calls")
        if history_limit:
            log.debug("history_limit=%s ignored; calls are stateless", history_limit)

        start = time.perf_counter()
        try:
            return self._complete(system_prompt, user_prompt)
        finally:
            elapsed = time.perf_counter() - start
            log.info(f"{type(self).__name__} ({self.model}) call took {elapsed:.1f}s")
            if self.metrics:
                self.metrics.record_reasoning_latency(self.caller, elapsed)

    @abstractmethod
    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        pass


class OpenAIClient(ModelClient):
    """OpenAI chat completions client."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_tokens: int = 4096,
        **kwargs,
    ):
        super().__init__(**kwargs)
        # Lazy import to avoid loading openai unless used
        from openai import OpenAI

        self.model = model
        self.max_tokens = max_tokens
        self.client = OpenAI(api_key=api_key, base_url=base_url or "https://api.openai.com/v1", timeout=timeout)

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=self.max_tokens,
            temperature=0.3,
        )
        return response.choices[0].message.content or ""


class AnthropicClient(ModelClient):
    """Anthropic messages client."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_tokens: int = 4096,
        **kwargs,
    ):
        super().__init__(**kwargs)
        from anthropic import Anthropic

        self.model = model
        self.max_tokens = max_tokens
        self.client = Anthropic(api_key=api_key, base_url=base_url, timeout=timeout)

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0.3,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        return "".join(getattr(block, "text", "") for block in response.content)


class MockClient(ModelClient):
    """Canned responses for tests and dry runs."""

    DEFAULT_RESPONSE = (
        "Markets are range-bound; no high-confidence setups.\n"
        "```sentinel-output\n"
        '{"sentiment": {}, "signals": [], "actions": [], "summary": "Mock analysis: hold."}\n'
        "```"
    )

    def __init__(self, response: Optional[str] = None, model: str = "mock", **kwargs):
        super().__init__(**kwargs)
        self.model = model
        self.response = response if response is not None else self.DEFAULT_RESPONSE
        self.calls = []

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        return self.response


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    timeout: float = 30.0,
    max_tokens: int = 4096,
    base_url: Optional[str] = None,
    metrics: Optional[MetricsRecorder] = None,
    caller: str = "sentinel",
) -> ModelClient:
    """
    Factory for reasoning clients.

    Raises:
        ConfigurationError: Unknown provider or missing API key
    """
    provider = provider.lower()
    common = dict(metrics=metrics, caller=caller)

    if provider == "mock":
        return MockClient(model=model or "mock", **common)

    if not api_key:
        raise ConfigurationError(f"{provider} provider requires an API key")

    if provider == "openai":
        return OpenAIClient(
            api_key, model=model or "gpt-4o", base_url=base_url, timeout=timeout, max_tokens=max_tokens, **common
        )
    if provider == "anthropic":
        return AnthropicClient(
            api_key, model=model or "claude-sonnet-4-5", base_url=base_url, timeout=timeout,
            max_tokens=max_tokens, **common
        )
    raise ConfigurationError(f"Unknown provider: {provider}. Use 'openai', 'anthropic', or 'mock'")
