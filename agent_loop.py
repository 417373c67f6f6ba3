"""
Worker/aligner execution loop.

One run alternates a worker turn (produce a candidate) with an aligner turn
(review it) until the aligner passes the candidate, an API failure ends
the run, or ``max_retries`` cycles have been spent.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from config_manager import ModelEndpoint
from data_models import LogEntry, LogRole, Verdict
from llm_service import AbortedError, CancelCheck, LLMService, StatusCallback
from llm_transport import ChunkCallback

logger = logging.getLogger(__name__)

PASS_TOKEN = "PASS"
MAX_RETRIES_REPORT = "Max retries reached."


def interpret_verdict(report_text: str) -> Verdict:
    """Decide an aligner verdict. The literal token PASS anywhere passes."""
    return Verdict.PASS if PASS_TOKEN in (report_text or "") else Verdict.FAIL


@dataclass
class AgentLoopResult:
    """Terminal outcome of one agent loop run"""
    content: str
    status: Verdict
    report: str
    log_entries: List[LogEntry] = field(default_factory=list)
    is_api_error: bool = False

    @property
    def passed(self) -> bool:
        return self.status == Verdict.PASS


class AgentLoop:
    """Runs worker/aligner cycles through a shared LLMService"""

    def __init__(self, service: LLMService):
        self.service = service

    @staticmethod
    def build_worker_prompt(task: str, previous_output: str, feedback: str) -> str:
        if not feedback:
            return task
        return (
            f"{task}\n\n"
            f"[Previous Output]\n{previous_output}\n\n"
            f"[Previous Feedback - Please Fix]\n{feedback}"
        )

    async def run(self,
                  endpoint: ModelEndpoint,
                  worker_label: str,
                  aligner_label: str,
                  worker_system_prompt: str,
                  aligner_system_prompt: str,
                  worker_task: str,
                  aligner_prompt_builder: Callable[[str], str],
                  max_retries: int = 3,
                  on_status: Optional[StatusCallback] = None,
                  on_chunk: Optional[ChunkCallback] = None,
                  is_cancelled: Optional[CancelCheck] = None) -> AgentLoopResult:
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")

        notify = on_status or (lambda message: None)
        entries: List[LogEntry] = []
        current_output = ""
        feedback = ""
        cycle = 0

        def check_cancelled():
            if is_cancelled is not None and is_cancelled():
                raise AbortedError()

        def api_failure(stage: str, error: Exception) -> AgentLoopResult:
            message = f"API ERROR in {stage}: {error}"
            logger.error(message)
            entries.append(LogEntry(attempt=cycle + 1, role=LogRole.SYSTEM, agent_name="System", content=message))
            return AgentLoopResult(current_output, Verdict.FAIL, message, entries, is_api_error=True)

        while cycle < max_retries:
            check_cancelled()
            attempt = cycle + 1

            # Worker turn
            if cycle == 0:
                notify(f"{worker_label}: Generating content...")
            else:
                notify(f"{worker_label}: Refining content (Attempt {attempt})...")
            worker_prompt = self.build_worker_prompt(worker_task, current_output, feedback)
            try:
                current_output = await self.service.invoke_with_retry(
                    endpoint, worker_prompt, worker_system_prompt, worker_label,
                    on_status, on_chunk, is_cancelled,
                )
            except AbortedError:
                raise
            except Exception as e:
                return api_failure("Worker", e)
            entries.append(LogEntry(
                attempt=attempt, role=LogRole.WORKER, agent_name=worker_label,
                content=current_output, prompt=worker_prompt, system_prompt=worker_system_prompt,
            ))

            check_cancelled()

            # Aligner turn
            notify(f"{aligner_label}: Checking quality...")
            aligner_prompt = aligner_prompt_builder(current_output)
            try:
                report = await self.service.invoke_with_retry(
                    endpoint, aligner_prompt, aligner_system_prompt, aligner_label,
                    on_status, None, is_cancelled,
                )
            except AbortedError:
                raise
            except Exception as e:
                return api_failure("Aligner", e)
            entries.append(LogEntry(
                attempt=attempt, role=LogRole.ALIGNER, agent_name=aligner_label,
                content=report, prompt=aligner_prompt, system_prompt=aligner_system_prompt,
            ))

            if interpret_verdict(report) == Verdict.PASS:
                logger.info(f"{aligner_label} passed the candidate on attempt {attempt}")
                return AgentLoopResult(current_output, Verdict.PASS, report, entries)

            logger.info(f"{aligner_label} rejected the candidate on attempt {attempt}")
            feedback = report
            cycle += 1

        entries.append(LogEntry(attempt=cycle, role=LogRole.SYSTEM, agent_name="System", content=MAX_RETRIES_REPORT))
        return AgentLoopResult(
            current_output, Verdict.FAIL, f"{MAX_RETRIES_REPORT} Last feedback: {feedback}", entries,
        )
