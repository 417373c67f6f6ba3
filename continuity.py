"""
Continuity planning for breakdown and script batches.

Everything here is a pure function of the project snapshot it is given.
The orchestrator calls these before every unit of work so the numbering
always derives from the freshest persisted state.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from data_models import Chapter, PlotBatch, PlotPoint, Project, ScriptFile
from extractors import format_points

logger = logging.getLogger(__name__)

PREVIOUS_TAIL_POINTS = 3


@dataclass
class BreakdownContext:
    """Numbering context for one breakdown batch"""
    batch_index: int
    chapters: List[Chapter]
    chapter_range: str
    last_episode: int = 0
    last_plot_number: int = 0
    next_batch_start_episode: Optional[int] = None
    previous_batch_tail: str = ""
    is_regeneration: bool = False

    @property
    def start_plot_number(self) -> int:
        return self.last_plot_number + 1


@dataclass
class ScriptContext:
    """Everything the script worker needs for one batch of plot points"""
    batch_index: int
    points: List[PlotPoint]
    episodes: List[int]
    related_chapters: List[Chapter] = field(default_factory=list)
    previous_batch_tail: str = ""
    previous_script: Optional[ScriptFile] = None
    # Episode shared with the previous batch; the worker only continues it
    continued_episode: Optional[int] = None
    # Episode shared with the next batch, whose continuation must survive a rewrite
    shared_next_episode: Optional[int] = None

    @property
    def reference_id(self) -> str:
        return f"{self.episodes[0]}-{self.episodes[-1]}"


def chapter_slice(chapters: List[Chapter], batch_index: int, batch_size: int) -> List[Chapter]:
    start = batch_index * batch_size
    return chapters[start:start + batch_size]


def chapter_range(chapters: List[Chapter]) -> str:
    return f"{chapters[0].order}-{chapters[-1].order}"


def parse_chapter_range(value: str) -> Optional[Tuple[int, int]]:
    """Split "first-last" into ints; None if the descriptor is malformed"""
    parts = (value or "").split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def previous_tail(batches: List[PlotBatch], batch_index: int) -> str:
    """Last few plot lines of the batch right before batch_index"""
    if batch_index <= 0 or batch_index - 1 >= len(batches):
        return ""
    return format_points(batches[batch_index - 1].points[-PREVIOUS_TAIL_POINTS:])


def plan_breakdown(project: Project, target_index: Optional[int] = None) -> Optional[BreakdownContext]:
    """
    Compute the context for breaking down batch ``target_index``.

    ``None`` appends the next batch. Returns ``None`` when the chapter slice
    is empty, meaning every chapter has been broken down.
    """
    batches = project.plot_batches
    batch_index = len(batches) if target_index is None else target_index
    if batch_index < 0 or batch_index > len(batches):
        raise ValueError(f"Batch index {batch_index} out of range (0..{len(batches)})")

    chapters = chapter_slice(project.chapters, batch_index, project.batch_size)
    if not chapters:
        return None

    last_episode = 0
    last_plot_number = 0
    for batch in batches[:batch_index]:
        if batch.points:
            last_plot_number += len(batch.points)
            last_episode = batch.last_episode

    is_regeneration = batch_index < len(batches)
    next_start = None
    if is_regeneration and batch_index < len(batches) - 1:
        next_start = batches[batch_index + 1].first_episode

    context = BreakdownContext(
        batch_index=batch_index,
        chapters=chapters,
        chapter_range=chapter_range(chapters),
        last_episode=last_episode,
        last_plot_number=last_plot_number,
        next_batch_start_episode=next_start,
        previous_batch_tail=previous_tail(batches, batch_index),
        is_regeneration=is_regeneration,
    )
    logger.debug(
        f"Breakdown plan: batch={batch_index} chapters={context.chapter_range} "
        f"last_episode={last_episode} last_plot={last_plot_number} bridge={next_start}"
    )
    return context


def next_script_batch_index(project: Project) -> Optional[int]:
    """Lowest batch index that still has an unused plot point"""
    for position, batch in enumerate(project.plot_batches):
        if batch.has_unused_points:
            return position
    return None


def related_chapters(project: Project, batch: PlotBatch) -> List[Chapter]:
    bounds = parse_chapter_range(batch.chapter_range)
    if bounds is None:
        logger.warning(f"Batch {batch.index} has malformed chapter range {batch.chapter_range!r}")
        return []
    start, end = bounds
    return [c for c in project.chapters if start <= c.order <= end]


def plan_script(project: Project, batch_index: Optional[int] = None) -> Optional[ScriptContext]:
    """
    Compute the context for scripting every episode of one batch.

    ``None`` picks the lowest batch with unused points. An explicit index
    regenerates that batch even if all of its points are already used.
    Returns ``None`` when there is nothing left to script.
    """
    batches = project.plot_batches
    if batch_index is None:
        batch_index = next_script_batch_index(project)
        if batch_index is None:
            return None
    elif batch_index < 0 or batch_index >= len(batches):
        raise ValueError(f"Batch index {batch_index} out of range (0..{len(batches) - 1})")

    batch = batches[batch_index]
    if not batch.points:
        return None

    episodes = sorted({p.episode for p in batch.points})

    previous_script = None
    continued_episode = None
    if batch_index > 0:
        previous_last = batches[batch_index - 1].last_episode
        if previous_last is not None:
            previous_script = project.find_script(previous_last)
            if previous_last == episodes[0]:
                continued_episode = previous_last

    shared_next_episode = None
    if batch_index + 1 < len(batches):
        next_first = batches[batch_index + 1].first_episode
        if next_first is not None and next_first == episodes[-1]:
            shared_next_episode = next_first

    return ScriptContext(
        batch_index=batch_index,
        points=list(batch.points),
        episodes=episodes,
        related_chapters=related_chapters(project, batch),
        previous_batch_tail=previous_tail(batches, batch_index),
        previous_script=previous_script,
        continued_episode=continued_episode,
        shared_next_episode=shared_next_episode,
    )


def batch_for_episode(project: Project, episode: int) -> Optional[int]:
    """Index of the first batch with a point targeting ``episode``"""
    for position, batch in enumerate(project.plot_batches):
        if any(p.episode == episode for p in batch.points):
            return position
    return None
