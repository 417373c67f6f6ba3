"""
Project orchestration for the Webtoon Adapter.
Drives breakdown and script units of work through the agent loop, persists
every finished unit and keeps observers in step with the durable record.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Tuple

from agent_loop import AgentLoop, AgentLoopResult
from config_manager import AppConfig, ModelEndpoint
from continuity import batch_for_episode, plan_breakdown, plan_script
from data_models import (
    BatchStatus, Chapter, ExecutionLog, LogType, NovelType, PlotBatch,
    PointStatus, Project, ScriptFile, ScriptStatus, Verdict,
)
from extractors import parse_chapter_order, parse_plot_points, parse_scripts, strip_episode_heading
from llm_service import AbortedError, LLMService
from llm_transport import ChunkCallback, LLMTransport
from project_store import ProjectStore, StoreError
import prompts

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]


class UnitStatus(Enum):
    """Outcome of one unit of work or of a loop over units"""
    SUCCESS = "success"
    FAIL = "fail"
    DONE = "done"
    NO_DATA = "no_data"
    ABORTED = "aborted"
    BLOCKED = "blocked"


@dataclass
class UnitResult:
    """Result of generating one breakdown batch or one batch of scripts"""
    status: UnitStatus
    report: str = ""
    is_api_error: bool = False
    batch_index: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == UnitStatus.SUCCESS


@dataclass
class LoopResult:
    """Result of a breakdown or script loop"""
    completed: int
    requested: int
    last: UnitResult

    @property
    def status(self) -> UnitStatus:
        return self.last.status


class WorkflowError(Exception):
    """Base exception for orchestration errors"""
    pass


class ProjectNotFoundError(WorkflowError):
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class CancellationToken:
    """Cooperative stop flag shared between a host and a running loop"""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    def reset(self):
        self._cancelled = False

    def is_cancelled(self) -> bool:
        return self._cancelled


class WorkflowManager:
    """
    Runs breakdown and script generation for stored projects.

    The project record is re-loaded before planning each unit and again
    before applying its result, so manual edits made while a model call was
    in flight are merged rather than overwritten. Callers must not run two
    units for the same project concurrently.
    """

    def __init__(self, config: AppConfig, store: ProjectStore, agent_loop: Optional[AgentLoop] = None):
        self.config = config
        self.store = store
        if agent_loop is None:
            service = LLMService(LLMTransport(config.api), config.retry)
            agent_loop = AgentLoop(service)
        self.agent_loop = agent_loop

        self._project_updated_callbacks: List[Callable] = []

    def add_project_updated_callback(self, callback: Callable[[Project], Any]):
        """Add callback fired after a project has been persisted"""
        self._project_updated_callbacks.append(callback)

    async def _call_async_or_sync(self, func: Callable, *args, **kwargs):
        """Call function whether it's async or sync"""
        if asyncio.iscoroutinefunction(func):
            return await func(*args, **kwargs)
        else:
            return func(*args, **kwargs)

    # --- persistence helpers ---

    async def get_project(self, project_id: str) -> Project:
        try:
            project = await self.store.load(project_id)
        except StoreError as e:
            raise WorkflowError(f"Failed to load project {project_id}: {e}") from e
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def _save(self, project: Project) -> Project:
        """Persist, then advertise. Observers never see unsaved state."""
        project.updated_at = time.time()
        try:
            await self.store.save_one(project)
        except StoreError as e:
            raise WorkflowError(f"Failed to save project {project.id}: {e}") from e

        for callback in self._project_updated_callbacks:
            try:
                await self._call_async_or_sync(callback, project)
            except Exception as e:
                logger.warning(f"Project update callback failed: {e}")
        return project

    async def _set_processing(self, project_id: str, action: Optional[str], status: str = ""):
        project = await self.get_project(project_id)
        project.is_processing = action is not None
        project.processing_action = action
        project.processing_status = status
        await self._save(project)

    async def _finish_processing(self, project_id: str):
        try:
            await self._set_processing(project_id, None)
        except ProjectNotFoundError:
            logger.warning(f"Project {project_id} disappeared while processing")

    def _endpoint(self, project: Project, stage: str) -> ModelEndpoint:
        name = project.script_model if stage == "script" else project.breakdown_model
        return self.config.get_endpoint(name, stage=stage)

    # --- project lifecycle ---

    async def create_project(self,
                             title: str,
                             novel_type: Optional[str] = None,
                             description: str = "",
                             batch_size: Optional[int] = None,
                             max_retries: Optional[int] = None) -> Project:
        defaults = self.config.project
        novel_type = NovelType(novel_type or defaults.novel_type).value
        batch_size = batch_size if batch_size is not None else defaults.batch_size
        max_retries = max_retries if max_retries is not None else defaults.max_retries

        if not title or not title.strip():
            raise ValueError("Project title cannot be empty")
        if not 1 <= batch_size <= 20:
            raise ValueError(f"Batch size must be between 1 and 20, got {batch_size}")
        if not 1 <= max_retries <= 10:
            raise ValueError(f"Max retries must be between 1 and 10, got {max_retries}")

        project = Project(
            id=f"proj-{uuid.uuid4().hex[:12]}",
            title=title.strip(),
            novel_type=novel_type,
            description=description,
            batch_size=batch_size,
            max_retries=max_retries,
        )
        logger.info(f"Created project {project.id} ({project.title})")
        return await self._save(project)

    async def delete_project(self, project_id: str):
        try:
            await self.store.delete_one(project_id)
        except StoreError as e:
            raise WorkflowError(str(e)) from e
        logger.info(f"Deleted project {project_id}")

    async def list_projects(self) -> List[Project]:
        """All projects, most recently modified first"""
        try:
            projects = await self.store.load_all()
        except StoreError as e:
            raise WorkflowError(str(e)) from e
        return sorted(projects, key=lambda p: p.updated_at, reverse=True)

    async def import_chapters(self, project_id: str, files: Iterable[Tuple[str, str]]) -> Project:
        """Add ``(file_name, text)`` pairs as chapters, ordered by the number in each file name"""
        project = await self.get_project(project_id)
        new_chapters = []
        for file_name, text in files:
            name = file_name[:-4] if file_name.lower().endswith(".txt") else file_name
            new_chapters.append(Chapter(
                id=f"chap-{uuid.uuid4().hex[:12]}",
                name=name,
                content=text,
                order=parse_chapter_order(file_name),
            ))

        project.chapters = sorted(project.chapters + new_chapters, key=lambda c: c.order)
        logger.info(f"Imported {len(new_chapters)} chapters into {project_id}")
        return await self._save(project)

    # --- breakdown ---

    async def process_breakdown_batch(self,
                                      project_id: str,
                                      batch_index: Optional[int] = None,
                                      cancel_token: Optional[CancellationToken] = None,
                                      on_status: Optional[StatusCallback] = None,
                                      on_chunk: Optional[ChunkCallback] = None) -> UnitResult:
        """Generate (or regenerate) one breakdown batch and persist it"""
        token = cancel_token or CancellationToken()
        project = await self.get_project(project_id)

        context = plan_breakdown(project, batch_index)
        if context is None:
            return UnitResult(UnitStatus.DONE)

        index = context.batch_index
        if on_status:
            on_status(f"正在拆解第 {context.chapter_range} 章 (接续第 {context.last_episode} 集)...")

        try:
            endpoint = self._endpoint(project, "breakdown")
        except (KeyError, ValueError) as e:
            return await self._record_setup_failure(project_id, LogType.BREAKDOWN, str(index), e, index)

        task = prompts.breakdown_task(
            project.novel_type, project.description, context.chapters,
            context.last_episode, context.last_plot_number,
            context.previous_batch_tail, context.next_batch_start_episode,
        )
        try:
            result = await self.agent_loop.run(
                endpoint,
                prompts.WORKER_LABELS["breakdown"],
                prompts.ALIGNER_LABELS["breakdown"],
                prompts.breakdown_worker_system_prompt(project.novel_type, project.batch_size),
                prompts.breakdown_aligner_system_prompt(project.novel_type, project.batch_size),
                task,
                prompts.breakdown_aligner_builder(task),
                max_retries=project.max_retries,
                on_status=on_status,
                on_chunk=on_chunk,
                is_cancelled=token.is_cancelled,
            )
        except AbortedError:
            logger.info(f"Breakdown of batch {index} aborted")
            return UnitResult(UnitStatus.ABORTED, batch_index=index)

        fresh = await self.get_project(project_id)
        if not result.is_api_error:
            self._apply_breakdown(fresh, context, result)
        fresh.logs.append(self._execution_log(LogType.BREAKDOWN, str(index), result))
        await self._save(fresh)
        logger.info(f"Breakdown batch {index} saved with verdict {result.status.value}")
        return self._unit_result(result, index)

    def _apply_breakdown(self, project: Project, context, result: AgentLoopResult):
        index = context.batch_index
        if index > len(project.plot_batches):
            raise WorkflowError(f"Batch {index} no longer follows the stored batches")

        points = parse_plot_points(result.content, index, context.last_plot_number)
        batch = PlotBatch(
            index=index,
            chapter_range=context.chapter_range,
            content=result.content,
            points=points,
            status=BatchStatus.APPROVED if result.passed else BatchStatus.REJECTED,
            report=result.report,
        )
        if index < len(project.plot_batches):
            project.plot_batches[index] = batch
        else:
            project.plot_batches.append(batch)

        consumed = {c.id for c in context.chapters}
        for chapter in project.chapters:
            if chapter.id in consumed:
                chapter.is_processed = True

    async def run_breakdown_loop(self,
                                 project_id: str,
                                 count: int = 1,
                                 cancel_token: Optional[CancellationToken] = None,
                                 on_status: Optional[StatusCallback] = None,
                                 on_chunk: Optional[ChunkCallback] = None) -> LoopResult:
        """
        Break down up to ``count`` further batches in order.

        Stops early when chapters run out, a batch fails, the last stored
        batch is rejected, or the token is cancelled.
        """
        token = cancel_token or CancellationToken()
        completed = 0
        last = UnitResult(UnitStatus.SUCCESS)

        await self._set_processing(project_id, "breakdown")
        try:
            while completed < count:
                if token.is_cancelled():
                    last = UnitResult(UnitStatus.ABORTED)
                    break

                project = await self.get_project(project_id)
                if project.plot_batches and project.plot_batches[-1].status == BatchStatus.REJECTED:
                    blocked = project.plot_batches[-1].index
                    last = UnitResult(
                        UnitStatus.BLOCKED,
                        report=f"Batch {blocked + 1} was rejected; retry it before continuing.",
                        batch_index=blocked,
                    )
                    logger.warning(f"Breakdown loop blocked by rejected batch {blocked}")
                    break

                last = await self.process_breakdown_batch(project_id, None, token, on_status, on_chunk)
                if not last.success:
                    break
                completed += 1
        finally:
            await self._finish_processing(project_id)

        logger.info(f"Breakdown loop finished: {completed}/{count} batches, last status {last.status.value}")
        return LoopResult(completed, count, last)

    async def retry_breakdown_batch(self,
                                    project_id: str,
                                    batch_index: int,
                                    cancel_token: Optional[CancellationToken] = None,
                                    on_status: Optional[StatusCallback] = None,
                                    on_chunk: Optional[ChunkCallback] = None) -> UnitResult:
        """Regenerate one existing batch in place, bypassing the sequential gate"""
        project = await self.get_project(project_id)
        if not 0 <= batch_index < len(project.plot_batches):
            raise ValueError(f"No breakdown batch {batch_index} in project {project_id}")

        await self._set_processing(project_id, "breakdown")
        try:
            return await self.process_breakdown_batch(project_id, batch_index, cancel_token, on_status, on_chunk)
        finally:
            await self._finish_processing(project_id)

    # --- scripts ---

    async def process_script_batch(self,
                                   project_id: str,
                                   batch_index: Optional[int] = None,
                                   cancel_token: Optional[CancellationToken] = None,
                                   on_status: Optional[StatusCallback] = None,
                                   on_chunk: Optional[ChunkCallback] = None) -> UnitResult:
        """Generate the scripts for every episode of one plot batch and persist them"""
        token = cancel_token or CancellationToken()
        project = await self.get_project(project_id)

        context = plan_script(project, batch_index)
        if context is None:
            return UnitResult(UnitStatus.NO_DATA)

        index = context.batch_index
        if on_status:
            on_status(f"正在生成第 {context.reference_id} 集剧本...")

        try:
            endpoint = self._endpoint(project, "script")
        except (KeyError, ValueError) as e:
            return await self._record_setup_failure(project_id, LogType.SCRIPT, context.reference_id, e, index)

        task = prompts.script_task(
            project.novel_type, project.description, context.points, context.episodes,
            context.related_chapters, context.previous_batch_tail, context.previous_script,
            context.continued_episode,
        )
        try:
            result = await self.agent_loop.run(
                endpoint,
                prompts.WORKER_LABELS["script"],
                prompts.ALIGNER_LABELS["script"],
                prompts.script_worker_system_prompt(project.novel_type),
                prompts.script_aligner_system_prompt(project.novel_type),
                task,
                prompts.script_aligner_builder(task),
                max_retries=project.max_retries,
                on_status=on_status,
                on_chunk=on_chunk,
                is_cancelled=token.is_cancelled,
            )
        except AbortedError:
            logger.info(f"Script generation for batch {index} aborted")
            return UnitResult(UnitStatus.ABORTED, batch_index=index)

        fresh = await self.get_project(project_id)
        if not result.is_api_error:
            self._apply_scripts(fresh, context, result)
        fresh.logs.append(self._execution_log(LogType.SCRIPT, context.reference_id, result))
        await self._save(fresh)
        logger.info(f"Scripts for episodes {context.reference_id} saved with verdict {result.status.value}")
        return self._unit_result(result, index)

    def _apply_scripts(self, project: Project, context, result: AgentLoopResult):
        parsed = parse_scripts(result.content)
        if not parsed and result.content.strip():
            logger.warning(
                f"No episode headings found in script output for {context.reference_id}; "
                f"storing it as episode {context.episodes[0]}"
            )
            parsed = [{"episode": context.episodes[0], "content": result.content.strip()}]

        status = ScriptStatus.APPROVED if result.passed else ScriptStatus.REJECTED
        for item in parsed:
            episode = item["episode"]
            if episode not in context.episodes:
                logger.warning(
                    f"Dropping script for episode {episode}: not part of batch {context.batch_index} "
                    f"(episodes {context.reference_id})"
                )
                continue

            script = ScriptFile(
                episode=episode,
                title=f"第 {episode} 集",
                content=item["content"],
                status=status,
                aligner_report=result.report,
            )
            existing = project.find_script(episode)
            if episode == context.continued_episode:
                self._continue_script(project, existing, script)
            else:
                if episode == context.shared_next_episode and existing is not None and existing.continuation:
                    script.continuation = existing.continuation
                    script.content = f"{script.content}\n\n{existing.continuation}"
                self._upsert_script(project, script)

        if result.passed:
            consumed = {p.id for p in context.points}
            for point in project.all_points():
                if point.id in consumed:
                    point.status = PointStatus.USED

    def _continue_script(self, project: Project, existing: Optional[ScriptFile], script: ScriptFile):
        """Append the tail of an episode that started in the previous batch"""
        tail = strip_episode_heading(script.content)
        if existing is None:
            script.continuation = tail
            self._upsert_script(project, script)
            return
        existing.content = f"{existing.base_content}\n\n{tail}" if tail else existing.base_content
        existing.continuation = tail
        existing.status = script.status
        existing.aligner_report = script.aligner_report
        logger.info(f"Episode {script.episode} continued from the previous batch")

    @staticmethod
    def _upsert_script(project: Project, script: ScriptFile):
        for position, existing in enumerate(project.scripts):
            if existing.episode == script.episode:
                project.scripts[position] = script
                return
        project.scripts.append(script)
        project.scripts.sort(key=lambda s: s.episode)

    async def run_script_loop(self,
                              project_id: str,
                              count: int = 1,
                              cancel_token: Optional[CancellationToken] = None,
                              on_status: Optional[StatusCallback] = None,
                              on_chunk: Optional[ChunkCallback] = None) -> LoopResult:
        """Script up to ``count`` batches, always picking the lowest batch with unused points"""
        token = cancel_token or CancellationToken()
        completed = 0
        last = UnitResult(UnitStatus.SUCCESS)

        await self._set_processing(project_id, "script")
        try:
            while completed < count:
                if token.is_cancelled():
                    last = UnitResult(UnitStatus.ABORTED)
                    break

                last = await self.process_script_batch(project_id, None, token, on_status, on_chunk)
                if not last.success:
                    break
                completed += 1
        finally:
            await self._finish_processing(project_id)

        logger.info(f"Script loop finished: {completed}/{count} batches, last status {last.status.value}")
        return LoopResult(completed, count, last)

    async def retry_script_batch(self,
                                 project_id: str,
                                 batch_index: int,
                                 cancel_token: Optional[CancellationToken] = None,
                                 on_status: Optional[StatusCallback] = None,
                                 on_chunk: Optional[ChunkCallback] = None) -> UnitResult:
        """Regenerate the scripts of one batch even if its points are already used"""
        project = await self.get_project(project_id)
        if not 0 <= batch_index < len(project.plot_batches):
            raise ValueError(f"No breakdown batch {batch_index} in project {project_id}")

        await self._set_processing(project_id, "script")
        try:
            return await self.process_script_batch(project_id, batch_index, cancel_token, on_status, on_chunk)
        finally:
            await self._finish_processing(project_id)

    async def retry_script_episode(self,
                                   project_id: str,
                                   episode: int,
                                   cancel_token: Optional[CancellationToken] = None,
                                   on_status: Optional[StatusCallback] = None,
                                   on_chunk: Optional[ChunkCallback] = None) -> UnitResult:
        """Regenerate the batch whose plot points target ``episode``"""
        project = await self.get_project(project_id)
        batch_index = batch_for_episode(project, episode)
        if batch_index is None:
            return UnitResult(UnitStatus.NO_DATA)
        return await self.retry_script_batch(project_id, batch_index, cancel_token, on_status, on_chunk)

    async def update_script_content(self, project_id: str, episode: int, content: str) -> ScriptFile:
        """Replace an episode's script text without consulting the aligner"""
        project = await self.get_project(project_id)
        script = project.find_script(episode)
        if script is None:
            raise WorkflowError(f"No script for episode {episode} in project {project_id}")
        script.content = content
        await self._save(project)
        return script

    async def update_script_status(self, project_id: str, episode: int, status: ScriptStatus) -> ScriptFile:
        """Set an episode's review status by hand; approval consumes its plot points"""
        project = await self.get_project(project_id)
        script = project.find_script(episode)
        if script is None:
            raise WorkflowError(f"No script for episode {episode} in project {project_id}")
        script.status = ScriptStatus(status)
        if script.status == ScriptStatus.APPROVED:
            for point in project.all_points():
                if point.episode == episode:
                    point.status = PointStatus.USED
        await self._save(project)
        return script

    async def get_logs(self,
                       project_id: str,
                       log_type: Optional[LogType] = None,
                       reference_id: Optional[str] = None) -> List[ExecutionLog]:
        """Execution logs of a project, newest first"""
        project = await self.get_project(project_id)
        logs = [
            log for log in project.logs
            if (log_type is None or log.type == LogType(log_type))
            and (reference_id is None or log.reference_id == reference_id)
        ]
        return sorted(logs, key=lambda log: log.timestamp, reverse=True)

    # --- shared ---

    @staticmethod
    def _execution_log(log_type: LogType, reference_id: str, result: AgentLoopResult) -> ExecutionLog:
        return ExecutionLog(
            type=log_type,
            reference_id=reference_id,
            status=result.status,
            entries=result.log_entries,
            result=result.content,
            report=result.report,
            is_api_error=result.is_api_error,
        )

    @staticmethod
    def _unit_result(result: AgentLoopResult, batch_index: int) -> UnitResult:
        status = UnitStatus.SUCCESS if result.passed else UnitStatus.FAIL
        return UnitResult(status, result.report, result.is_api_error, batch_index)

    async def _record_setup_failure(self, project_id: str, log_type: LogType, reference_id: str,
                                    error: Exception, batch_index: int) -> UnitResult:
        """Log a unit that could not start, e.g. because its model endpoint is misconfigured"""
        report = f"API ERROR: {error}"
        logger.error(f"{log_type.value} {reference_id} could not start: {error}")
        project = await self.get_project(project_id)
        project.logs.append(ExecutionLog(
            type=log_type, reference_id=reference_id, status=Verdict.FAIL,
            report=report, is_api_error=True,
        ))
        await self._save(project)
        return UnitResult(UnitStatus.FAIL, report, True, batch_index)
