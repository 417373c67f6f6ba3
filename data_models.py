"""
Data models for the Webtoon Adapter.
"""

import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Any


class NovelType(str, Enum):
    """Genre of the source novel, used to steer the prompts"""
    FANTASY = "玄幻"
    WUXIA = "武侠"
    URBAN = "都市"
    ROMANCE = "言情"
    ANCIENT_ROMANCE = "古言"
    SUSPENSE = "悬疑"
    MYSTERY = "推理"
    SCI_FI = "科幻"
    DOOMSDAY = "末世"
    REBIRTH = "重生"


class PointStatus(str, Enum):
    UNUSED = "unused"
    USED = "used"


class BatchStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ScriptStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"


class Verdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class LogType(str, Enum):
    BREAKDOWN = "breakdown"
    SCRIPT = "script"


class LogRole(str, Enum):
    WORKER = "worker"
    ALIGNER = "aligner"
    SYSTEM = "system"


UNORDERED_CHAPTER = 9999


@dataclass
class Chapter:
    """One imported source chapter"""
    id: str
    name: str
    content: str
    order: int = UNORDERED_CHAPTER
    is_processed: bool = False


@dataclass
class PlotPoint:
    """One atomic story beat extracted from a breakdown"""
    id: str
    content: str
    scene: str
    action: str
    hook_type: str
    episode: int
    batch_index: int
    sequence: int
    status: PointStatus = PointStatus.UNUSED
    source_chapter: Optional[int] = None

    @property
    def is_used(self) -> bool:
        return self.status == PointStatus.USED


@dataclass
class PlotBatch:
    """A breakdown of one contiguous slice of chapters"""
    index: int
    chapter_range: str
    content: str
    points: List[PlotPoint] = field(default_factory=list)
    status: BatchStatus = BatchStatus.PENDING
    report: Optional[str] = None

    @property
    def first_episode(self) -> Optional[int]:
        return self.points[0].episode if self.points else None

    @property
    def last_episode(self) -> Optional[int]:
        return self.points[-1].episode if self.points else None

    @property
    def has_unused_points(self) -> bool:
        return any(not p.is_used for p in self.points)


@dataclass
class ScriptFile:
    """The script of a single episode"""
    episode: int
    title: str
    content: str
    status: ScriptStatus = ScriptStatus.DRAFT
    aligner_report: Optional[str] = None
    # Tail written by the next batch when it continues this episode
    continuation: str = ""

    @property
    def base_content(self) -> str:
        """Content without the continuation appended by the next batch"""
        if self.continuation and self.content.endswith(self.continuation):
            return self.content[:-len(self.continuation)].rstrip()
        return self.content


@dataclass
class LogEntry:
    """One worker or aligner turn inside an agent loop run"""
    attempt: int
    role: LogRole
    agent_name: str
    content: str
    prompt: str = ""
    system_prompt: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ExecutionLog:
    """Audit record of one generation attempt"""
    type: LogType
    reference_id: str
    status: Verdict
    entries: List[LogEntry] = field(default_factory=list)
    result: str = ""
    report: str = ""
    is_api_error: bool = False
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: f"log-{uuid.uuid4().hex[:12]}")


@dataclass
class Project:
    """Aggregate root: a novel and everything generated from it"""
    id: str
    title: str
    novel_type: str = NovelType.FANTASY.value
    description: str = ""
    batch_size: int = 6
    max_retries: int = 3
    breakdown_model: Optional[str] = None
    script_model: Optional[str] = None

    chapters: List[Chapter] = field(default_factory=list)
    plot_batches: List[PlotBatch] = field(default_factory=list)
    scripts: List[ScriptFile] = field(default_factory=list)
    logs: List[ExecutionLog] = field(default_factory=list)

    # Transient processing state
    is_processing: bool = False
    processing_action: Optional[str] = None
    processing_status: str = ""

    updated_at: float = field(default_factory=time.time)

    def all_points(self) -> List[PlotPoint]:
        """Plot points of every batch flattened in batch order"""
        return [p for batch in self.plot_batches for p in batch.points]

    def find_script(self, episode: int) -> Optional[ScriptFile]:
        for script in self.scripts:
            if script.episode == episode:
                return script
        return None

    def stats(self) -> Dict[str, Any]:
        return {
            "total_chapters": len(self.chapters),
            "processed_chapters": sum(1 for c in self.chapters if c.is_processed),
            "plot_batches": len(self.plot_batches),
            "script_episodes": len(self.scripts),
            "last_modified": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        data = dict(data)
        chapters = [Chapter(**c) for c in data.pop("chapters", [])]

        batches = []
        for batch_data in data.pop("plot_batches", []):
            batch_data = dict(batch_data)
            points = []
            for point_data in batch_data.pop("points", []):
                point_data = dict(point_data)
                point_data["status"] = PointStatus(point_data.get("status", "unused"))
                points.append(PlotPoint(**point_data))
            batch_data["status"] = BatchStatus(batch_data.get("status", "pending"))
            batches.append(PlotBatch(points=points, **batch_data))

        scripts = []
        for script_data in data.pop("scripts", []):
            script_data = dict(script_data)
            script_data["status"] = ScriptStatus(script_data.get("status", "draft"))
            scripts.append(ScriptFile(**script_data))

        logs = []
        for log_data in data.pop("logs", []):
            log_data = dict(log_data)
            entries = []
            for entry_data in log_data.pop("entries", []):
                entry_data = dict(entry_data)
                entry_data["role"] = LogRole(entry_data["role"])
                entries.append(LogEntry(**entry_data))
            log_data["type"] = LogType(log_data["type"])
            log_data["status"] = Verdict(log_data["status"])
            logs.append(ExecutionLog(entries=entries, **log_data))

        return cls(chapters=chapters, plot_batches=batches, scripts=scripts, logs=logs, **data)
