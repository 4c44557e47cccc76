"""
Tests for reasoning-service clients.

Coverage:
- Tool access is always refused
- Provider factory validation
- Latency recorded per caller
- Provider SDK calls carry prompts, model and limits
"""

from unittest.mock import MagicMock

import pytest

from ai.model_client import AnthropicClient, MockClient, OpenAIClient, create_model_client
from core.exceptions import ConfigurationError
from infra.metrics import MetricsRecorder


class TestGenerate:
    def test_tools_refused(self):
        client = MockClient()
        with pytest.raises(ValueError):
            client.generate("system", "user", tools_allowed=True)
        assert client.calls == []

    def test_returns_text_and_records_call(self):
        client = MockClient(response="hello")
        assert client.generate("system", "user") == "hello"
        assert client.calls == [("system", "user")]

    def test_latency_recorded(self):
        metrics = MetricsRecorder(enabled=False)
        MockClient(metrics=metrics, caller="ceo").generate("s", "u")
        assert metrics.snapshot()["reasoning_calls:ceo"] == 1

    def test_errors_propagate(self):
        class Broken(MockClient):
            def _complete(self, system_prompt, user_prompt):
                raise TimeoutError("slow")

        with pytest.raises(TimeoutError):
            Broken().generate("s", "u")


class TestFactory:
    def test_mock_needs_no_key(self):
        client = create_model_client("mock", model="m")
        assert isinstance(client, MockClient)
        assert client.model == "m"

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            create_model_client("anthropic", api_key="")

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            create_model_client("llama", api_key="k")

    def test_openai(self):
        client = create_model_client("openai", api_key="sk-test", model="gpt-4o-mini", timeout=12)
        assert isinstance(client, OpenAIClient)
        assert client.model == "gpt-4o-mini"

    def test_anthropic(self):
        client = create_model_client("Anthropic", api_key="sk-test", caller="ceo")
        assert isinstance(client, AnthropicClient)
        assert client.caller == "ceo"


class TestProviderCalls:
    def test_openai_request(self):
        client = OpenAIClient("sk-test", model="gpt-4o", max_tokens=256)
        client.client = MagicMock()
        choice = MagicMock()
        choice.message.content = "answer"
        client.client.chat.completions.create.return_value = MagicMock(choices=[choice])

        assert client.generate("sys", "usr") == "answer"
        kwargs = client.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_tokens"] == 256
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "usr"},
        ]
        assert "tools" not in kwargs

    def test_anthropic_request(self):
        client = AnthropicClient("sk-test", model="claude-sonnet-4-5")
        client.client = MagicMock()
        client.client.messages.create.return_value = MagicMock(
            content=[MagicMock(text="part one "), MagicMock(text="part two")]
        )

        assert client.generate("sys", "usr") == "part one part two"
        kwargs = client.client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "usr"}]
        assert "tools" not in kwargs
