"""
Provider transports for the Webtoon Adapter.

Every transport exposes the same coroutine::

    await transport.invoke(endpoint, prompt, system_instruction, on_chunk)

which returns the complete generated text. When ``on_chunk`` is given the
text is streamed and every increment is handed to the callback as it
arrives; the concatenation of all chunks equals the returned string.

Provider failures are raised as ``ProviderError`` already carrying their
``ErrorClass`` so callers never inspect raw error text themselves.
"""

import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import google.generativeai as genai
import httpx

from config_manager import ApiConfig, GeminiEndpoint, ModelEndpoint, OpenAICompatibleEndpoint

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class ErrorClass(Enum):
    """Closed classification of provider failures"""
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


_RATE_LIMIT_SIGNALS = ("429", "rate limit", "resource exhausted", "resource_exhausted", "too many requests")
_AUTH_SIGNALS = ("401", "403", "permission", "invalid api key", "api key not valid", "api_key_invalid", "unauthorized")
_QUOTA_SIGNAL = "quota"
_SERVER_SIGNALS = ("500", "503", "internal", "overloaded")


def classify_error(error: Any) -> ErrorClass:
    """Classify a provider error by case-insensitive substring matching.

    Explicit throttling wins over everything, so "quota ... 429" stays
    retryable. A bare "quota" only counts as throttling when no
    authorization signal is present, so "403 ... quota" is fatal.
    """
    message = str(error).lower()

    if any(signal in message for signal in _RATE_LIMIT_SIGNALS):
        return ErrorClass.RATE_LIMITED
    if any(signal in message for signal in _AUTH_SIGNALS):
        return ErrorClass.FATAL
    if _QUOTA_SIGNAL in message:
        return ErrorClass.RATE_LIMITED
    if any(signal in message for signal in _SERVER_SIGNALS):
        return ErrorClass.TRANSIENT
    return ErrorClass.UNKNOWN


class ProviderError(Exception):
    """Raised by a transport for any failed model call"""

    def __init__(self, message: str, error_class: Optional[ErrorClass] = None):
        super().__init__(message)
        self.error_class = error_class if error_class is not None else classify_error(message)


class GeminiTransport:
    """Native Gemini client using the SDK's token stream"""

    _configured: Optional[Tuple[str, Optional[str]]] = None

    def __init__(self, api_config: Optional[ApiConfig] = None):
        self.api_config = api_config or ApiConfig()

    def _configure(self, endpoint: GeminiEndpoint):
        # genai keeps one process-wide client; only reconfigure on change
        key = (endpoint.api_key, endpoint.base_url)
        if GeminiTransport._configured == key:
            return
        options = {"api_endpoint": endpoint.base_url} if endpoint.base_url else None
        genai.configure(api_key=endpoint.api_key, client_options=options)
        GeminiTransport._configured = key

    def _build_model(self, endpoint: GeminiEndpoint, system_instruction: str):
        generation_config = genai.types.GenerationConfig(
            temperature=self.api_config.temperature,
            max_output_tokens=self.api_config.max_output_tokens,
        )
        return genai.GenerativeModel(
            endpoint.model_name,
            system_instruction=system_instruction or None,
            generation_config=generation_config,
        )

    async def invoke(self, endpoint: GeminiEndpoint, prompt: str, system_instruction: str,
                     on_chunk: Optional[ChunkCallback] = None) -> str:
        try:
            self._configure(endpoint)
            model = self._build_model(endpoint, system_instruction)
            request_options = {"timeout": self.api_config.timeout}

            if on_chunk is None:
                response = await model.generate_content_async(prompt, request_options=request_options)
                return response.text or ""

            parts = []
            response = await model.generate_content_async(prompt, stream=True, request_options=request_options)
            async for chunk in response:
                try:
                    text = chunk.text
                except ValueError:
                    # Chunks without text parts (e.g. safety metadata)
                    logger.warning("Skipping Gemini stream chunk without text")
                    continue
                if text:
                    parts.append(text)
                    on_chunk(text)
            return "".join(parts)

        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Gemini error ({endpoint.model_name}): {e}") from e


class OpenAICompatibleTransport:
    """Chat-completions client over plain HTTP with SSE framing"""

    def __init__(self, api_config: Optional[ApiConfig] = None,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_config = api_config or ApiConfig()
        self._http_transport = http_transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.api_config.timeout, connect=30.0),
            transport=self._http_transport,
        )

    def _url(self, endpoint: OpenAICompatibleEndpoint) -> str:
        base_url = (endpoint.base_url or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        return f"{base_url}/chat/completions"

    def _payload(self, endpoint: OpenAICompatibleEndpoint, prompt: str, system_instruction: str,
                 stream: bool) -> Dict[str, Any]:
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": endpoint.model_name,
            "messages": messages,
            "temperature": self.api_config.temperature,
            "max_tokens": self.api_config.max_output_tokens,
            "stream": stream,
        }

    def _headers(self, endpoint: OpenAICompatibleEndpoint) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {endpoint.api_key}",
        }

    async def invoke(self, endpoint: OpenAICompatibleEndpoint, prompt: str, system_instruction: str,
                     on_chunk: Optional[ChunkCallback] = None) -> str:
        payload = self._payload(endpoint, prompt, system_instruction, stream=on_chunk is not None)
        try:
            async with self._client() as client:
                if on_chunk is None:
                    response = await client.post(self._url(endpoint), json=payload, headers=self._headers(endpoint))
                    if response.status_code >= 400:
                        raise ProviderError(f"HTTP {response.status_code}: {response.text}")
                    data = response.json()
                    return data["choices"][0]["message"].get("content") or ""

                async with client.stream("POST", self._url(endpoint), json=payload,
                                         headers=self._headers(endpoint)) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise ProviderError(
                            f"HTTP {response.status_code}: {body.decode('utf-8', errors='replace')}"
                        )
                    return await self._consume_stream(response, on_chunk)

        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"HTTP transport error ({endpoint.model_name}): {e}") from e

    async def _consume_stream(self, response: httpx.Response, on_chunk: ChunkCallback) -> str:
        parts = []
        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith(SSE_DATA_PREFIX):
                continue
            data = line[len(SSE_DATA_PREFIX):].strip()
            if data == SSE_DONE:
                break
            try:
                frame = json.loads(data)
                choices = frame.get("choices") or []
                text = (choices[0].get("delta") or {}).get("content") if choices else None
            except (json.JSONDecodeError, AttributeError, IndexError) as e:
                logger.warning(f"Skipping malformed stream frame: {data[:80]!r} ({e})")
                continue
            if text:
                parts.append(text)
                on_chunk(text)
        return "".join(parts)


class LLMTransport:
    """Dispatches a call to the transport matching the endpoint's provider"""

    def __init__(self, api_config: Optional[ApiConfig] = None,
                 gemini: Optional[GeminiTransport] = None,
                 openai_compatible: Optional[OpenAICompatibleTransport] = None):
        self.gemini = gemini or GeminiTransport(api_config)
        self.openai_compatible = openai_compatible or OpenAICompatibleTransport(api_config)

    async def invoke(self, endpoint: ModelEndpoint, prompt: str, system_instruction: str,
                     on_chunk: Optional[ChunkCallback] = None) -> str:
        if isinstance(endpoint, GeminiEndpoint):
            return await self.gemini.invoke(endpoint, prompt, system_instruction, on_chunk)
        if isinstance(endpoint, OpenAICompatibleEndpoint):
            return await self.openai_compatible.invoke(endpoint, prompt, system_instruction, on_chunk)
        raise TypeError(f"Unsupported endpoint type: {type(endpoint).__name__}")
