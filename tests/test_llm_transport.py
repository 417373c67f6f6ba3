"""
Tests for the provider transports and error classification.
"""

import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from config_manager import GeminiEndpoint, OpenAICompatibleEndpoint
from llm_transport import (
    ErrorClass, GeminiTransport, LLMTransport, OpenAICompatibleTransport, ProviderError, classify_error,
)


def sse_body(*frames):
    return "".join(f"data: {frame}\n\n" for frame in frames)


def delta(text):
    return json.dumps({"choices": [{"delta": {"content": text}}]})


@pytest.fixture
def openai_endpoint():
    return OpenAICompatibleEndpoint(model_name="deepseek-chat", api_key="sk-test", base_url="https://llm.example.com/v1/")


class TestClassifyError:

    @pytest.mark.parametrize("message, expected", [
        ("429 Too Many Requests", ErrorClass.RATE_LIMITED),
        ("Resource exhausted: quota exceeded (429)", ErrorClass.RATE_LIMITED),
        ("You exceeded your current quota", ErrorClass.RATE_LIMITED),
        ("403 Forbidden: quota project permission", ErrorClass.FATAL),
        ("401 Unauthorized", ErrorClass.FATAL),
        ("API key not valid. Please pass a valid API key.", ErrorClass.FATAL),
        ("Permission denied on resource", ErrorClass.FATAL),
        ("500 Internal Server Error", ErrorClass.TRANSIENT),
        ("503 The model is overloaded", ErrorClass.TRANSIENT),
        ("Connection reset by peer", ErrorClass.UNKNOWN),
    ])
    def test_classification(self, message, expected):
        assert classify_error(message) == expected

    def test_provider_error_classifies_itself(self):
        assert ProviderError("HTTP 429: slow down").error_class == ErrorClass.RATE_LIMITED
        assert ProviderError("whatever", ErrorClass.FATAL).error_class == ErrorClass.FATAL


class TestOpenAICompatibleTransport:

    @pytest.mark.asyncio
    async def test_streams_sse_frames(self, openai_endpoint):
        captured = {}

        def handler(request: httpx.Request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["payload"] = json.loads(request.content)
            body = sse_body(delta("第一"), delta("幕"), "[DONE]", delta("ignored"))
            return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})

        transport = OpenAICompatibleTransport(http_transport=httpx.MockTransport(handler))
        chunks = []
        text = await transport.invoke(openai_endpoint, "写剧本", "你是编剧", chunks.append)

        assert text == "第一幕"
        assert "".join(chunks) == text
        assert captured["url"] == "https://llm.example.com/v1/chat/completions"
        assert captured["auth"] == "Bearer sk-test"
        assert captured["payload"]["stream"] is True
        assert captured["payload"]["messages"] == [
            {"role": "system", "content": "你是编剧"},
            {"role": "user", "content": "写剧本"},
        ]

    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self, openai_endpoint):
        body = (
            ": keep-alive\n\n"
            + sse_body(delta("A"), "{not json", json.dumps({"choices": []}), delta("B"), "[DONE]")
        )
        transport = OpenAICompatibleTransport(
            http_transport=httpx.MockTransport(lambda request: httpx.Response(200, text=body))
        )
        chunks = []
        assert await transport.invoke(openai_endpoint, "p", "s", chunks.append) == "AB"
        assert chunks == ["A", "B"]

    @pytest.mark.asyncio
    async def test_unary_request(self, openai_endpoint):
        def handler(request):
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json={"choices": [{"message": {"content": "完整输出"}}]})

        transport = OpenAICompatibleTransport(http_transport=httpx.MockTransport(handler))
        assert await transport.invoke(openai_endpoint, "p", "") == "完整输出"

    @pytest.mark.asyncio
    async def test_http_error_is_classified(self, openai_endpoint):
        transport = OpenAICompatibleTransport(
            http_transport=httpx.MockTransport(lambda request: httpx.Response(429, text="rate limit"))
        )
        with pytest.raises(ProviderError) as exc_info:
            await transport.invoke(openai_endpoint, "p", "s", lambda chunk: None)
        assert exc_info.value.error_class == ErrorClass.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_network_error_is_wrapped(self, openai_endpoint):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        transport = OpenAICompatibleTransport(http_transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderError) as exc_info:
            await transport.invoke(openai_endpoint, "p", "s")
        assert exc_info.value.error_class == ErrorClass.UNKNOWN


class TestGeminiTransport:

    @pytest.fixture(autouse=True)
    def reset_configuration(self):
        GeminiTransport._configured = None
        yield
        GeminiTransport._configured = None

    @pytest.mark.asyncio
    async def test_unary_generation(self, gemini_endpoint):
        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=MagicMock(text="拆解结果"))

        with patch("llm_transport.genai") as genai:
            genai.GenerativeModel.return_value = model
            text = await GeminiTransport().invoke(gemini_endpoint, "prompt", "system")

        assert text == "拆解结果"
        genai.configure.assert_called_once_with(api_key="test-key", client_options=None)
        assert genai.GenerativeModel.call_args.kwargs["system_instruction"] == "system"

    @pytest.mark.asyncio
    async def test_streaming_generation(self, gemini_endpoint):
        class Stream:
            def __init__(self, chunks):
                self._chunks = iter(chunks)

            def __aiter__(self):
                return self

            async def __anext__(self):
                try:
                    return next(self._chunks)
                except StopIteration:
                    raise StopAsyncIteration

        class Blocked:
            @property
            def text(self):
                raise ValueError("no text parts")

        model = MagicMock()
        model.generate_content_async = AsyncMock(
            return_value=Stream([MagicMock(text="第"), Blocked(), MagicMock(text="1集")])
        )

        chunks = []
        with patch("llm_transport.genai") as genai:
            genai.GenerativeModel.return_value = model
            text = await GeminiTransport().invoke(gemini_endpoint, "prompt", "system", chunks.append)

        assert text == "第1集"
        assert chunks == ["第", "1集"]
        assert model.generate_content_async.call_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_configure_only_on_change(self, gemini_endpoint):
        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=MagicMock(text="ok"))

        with patch("llm_transport.genai") as genai:
            genai.GenerativeModel.return_value = model
            transport = GeminiTransport()
            await transport.invoke(gemini_endpoint, "a", "s")
            await transport.invoke(gemini_endpoint, "b", "s")
            await transport.invoke(GeminiEndpoint(model_name="gemini-test", api_key="other"), "c", "s")

        assert genai.configure.call_count == 2

    @pytest.mark.asyncio
    async def test_sdk_errors_become_provider_errors(self, gemini_endpoint):
        model = MagicMock()
        model.generate_content_async = AsyncMock(side_effect=RuntimeError("429 Resource has been exhausted"))

        with patch("llm_transport.genai") as genai:
            genai.GenerativeModel.return_value = model
            with pytest.raises(ProviderError) as exc_info:
                await GeminiTransport().invoke(gemini_endpoint, "p", "s")

        assert exc_info.value.error_class == ErrorClass.RATE_LIMITED


class TestLLMTransport:

    @pytest.mark.asyncio
    async def test_dispatches_by_endpoint_type(self, gemini_endpoint, openai_endpoint):
        gemini = MagicMock(invoke=AsyncMock(return_value="g"))
        openai = MagicMock(invoke=AsyncMock(return_value="o"))
        transport = LLMTransport(gemini=gemini, openai_compatible=openai)

        assert await transport.invoke(gemini_endpoint, "p", "s") == "g"
        assert await transport.invoke(openai_endpoint, "p", "s") == "o"

    @pytest.mark.asyncio
    async def test_rejects_unknown_endpoint(self):
        transport = LLMTransport(gemini=MagicMock(), openai_compatible=MagicMock())
        with pytest.raises(TypeError):
            await transport.invoke({"provider": "gemini"}, "p", "s")
