"""
Resilient invocation of language models.
Wraps the provider transports with classification-driven retry, backoff
and cooperative cancellation.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from config_manager import ModelEndpoint, RetryConfig
from llm_transport import ChunkCallback, ErrorClass, LLMTransport, ProviderError, classify_error

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]
CancelCheck = Callable[[], bool]

# Status prefix sent before a retry when chunks from the failed attempt were
# already streamed; hosts should discard what they have shown so far.
STREAM_RESTARTED = "[STREAM RESTARTED]"


def is_stream_restart(message: str) -> bool:
    return message.startswith(STREAM_RESTARTED)


class LLMServiceError(Exception):
    """Base exception for model service errors"""
    pass


class FatalAuthError(LLMServiceError):
    """Raised for credential or permission failures; never retried"""
    pass


class AbortedError(Exception):
    """Raised when the user cancels a running generation"""

    def __init__(self, message: str = "Generation aborted by user"):
        super().__init__(message)


class LLMService:
    """Model invocation with the retry policy used by every agent turn"""

    def __init__(self, transport: Optional[LLMTransport] = None, retry_config: Optional[RetryConfig] = None):
        self.transport = transport or LLMTransport()
        self.retry_config = retry_config or RetryConfig()

        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "errors": 0,
            "retries": 0,
            "rate_limit_pauses": 0,
            "total_characters": 0,
            "total_generation_time": 0.0,
        }

    def _check_cancelled(self, is_cancelled: Optional[CancelCheck]):
        if is_cancelled is not None and is_cancelled():
            raise AbortedError()

    async def _cooldown(self, seconds: float, is_cancelled: Optional[CancelCheck]):
        """Sleep in one-second steps, polling for cancellation before each"""
        remaining = seconds
        while remaining > 0:
            self._check_cancelled(is_cancelled)
            step = min(1.0, remaining)
            await asyncio.sleep(step)
            remaining -= step
        self._check_cancelled(is_cancelled)

    @staticmethod
    def _error_class(error: Exception) -> ErrorClass:
        if isinstance(error, ProviderError):
            return error.error_class
        return classify_error(error)

    async def invoke_with_retry(self,
                                endpoint: ModelEndpoint,
                                prompt: str,
                                system_prompt: str,
                                agent_label: str,
                                on_status: Optional[StatusCallback] = None,
                                on_chunk: Optional[ChunkCallback] = None,
                                is_cancelled: Optional[CancelCheck] = None) -> str:
        """Invoke a model until it answers, the error is fatal or retries run out.

        Rate limiting waits ``rate_limit_wait_seconds`` and retries without
        any cap. Server-side errors back off linearly with the attempt
        number, anything else waits a short fixed delay; both share a budget
        of ``max_api_retries`` after which the last error propagates as-is.
        """
        notify = on_status or (lambda message: None)
        policy = self.retry_config
        attempt = 0
        streamed = {"chunks": 0}

        def forward(chunk: str):
            streamed["chunks"] += 1
            on_chunk(chunk)

        def announce_restart():
            if streamed["chunks"]:
                logger.info(f"{agent_label}: discarding {streamed['chunks']} streamed chunks before retry")
                notify(f"{STREAM_RESTARTED} {agent_label}: partial output discarded, restarting stream")
                streamed["chunks"] = 0

        while True:
            self._check_cancelled(is_cancelled)
            self._stats["total_requests"] += 1
            start_time = time.time()

            try:
                text = await self.transport.invoke(
                    endpoint, prompt, system_prompt, forward if on_chunk else None
                )
            except Exception as e:
                self._check_cancelled(is_cancelled)
                self._stats["errors"] += 1
                error_class = self._error_class(e)

                if error_class == ErrorClass.RATE_LIMITED:
                    self._stats["rate_limit_pauses"] += 1
                    logger.warning(f"{agent_label}: rate limited, pausing {policy.rate_limit_wait_seconds}s: {e}")
                    notify(f"⚠️ API Rate Limit Triggered. Pausing for {policy.rate_limit_wait_seconds}s before retry...")
                    await self._cooldown(policy.rate_limit_wait_seconds, is_cancelled)
                    announce_restart()
                    notify(f"{agent_label}: Resuming after cooldown...")
                    continue

                if error_class == ErrorClass.FATAL:
                    logger.error(f"{agent_label}: fatal API error, not retrying: {e}")
                    raise FatalAuthError(f"FATAL_API_ERROR: Quota exceeded or Permission denied. {e}") from e

                if attempt < policy.max_api_retries:
                    attempt += 1
                    self._stats["retries"] += 1
                    if error_class == ErrorClass.TRANSIENT:
                        wait = attempt * policy.server_backoff_seconds
                        notify(f"⚠️ Server Busy ({e}). Retrying in {wait:g}s...")
                    else:
                        wait = policy.unknown_backoff_seconds
                        notify(f"⚠️ Network/Unknown Error. Retrying ({attempt}/{policy.max_api_retries})...")
                    logger.warning(
                        f"{agent_label}: attempt {attempt}/{policy.max_api_retries} failed "
                        f"({error_class.value}): {e}. Retrying in {wait:g}s"
                    )
                    await self._cooldown(wait, is_cancelled)
                    announce_restart()
                    continue

                logger.error(f"{agent_label}: retries exhausted. Final error: {e}")
                raise

            generation_time = time.time() - start_time
            self._stats["successful_requests"] += 1
            self._stats["total_characters"] += len(text)
            self._stats["total_generation_time"] += generation_time
            logger.debug(f"{agent_label}: generated {len(text)} characters in {generation_time:.2f}s")
            return text

    def get_statistics(self) -> Dict[str, Any]:
        """Get service statistics"""
        requests = self._stats["total_requests"]
        successes = self._stats["successful_requests"]
        return {
            **self._stats,
            "error_rate": self._stats["errors"] / requests if requests else 0,
            "average_generation_time": self._stats["total_generation_time"] / successes if successes else 0,
            "config": {
                "rate_limit_wait_seconds": self.retry_config.rate_limit_wait_seconds,
                "max_api_retries": self.retry_config.max_api_retries,
            },
        }
