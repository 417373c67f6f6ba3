"""
Parsers that mine structured records out of free-form worker output.
"""

import logging
import re
from typing import Dict, List

from data_models import PlotPoint, PointStatus, UNORDERED_CHAPTER

logger = logging.getLogger(__name__)

# 【剧情12】scene，action，hook type，第4集[，...第7章]
# Either ASCII or full-width commas separate the segments.
PLOT_LINE_RE = re.compile(
    r"【剧情\d+】\s*(?P<scene>.*?)[,，]\s*(?P<action>.*?)[,，]\s*(?P<hook>.*?)[,，]\s*第(?P<episode>\d+)集"
    r"(?:.*?第(?P<chapter>\d+)章)?"
)
SCRIPT_DELIMITER = "==="
SCRIPT_HEADING_RE = re.compile(r"#\s*第\s*(\d+)\s*集")
CHAPTER_ORDER_RE = re.compile(r"(\d+)")


def plot_point_id(batch_index: int, sequence: int) -> str:
    return f"batch-{batch_index}-plot-{sequence}"


def parse_plot_points(raw_text: str, batch_index: int, start_plot_number: int = 0) -> List[PlotPoint]:
    """Extract plot points line by line; non-matching lines are skipped.

    Identity comes from the position in this batch, never from the number
    the model wrote inside 【剧情n】.
    """
    points: List[PlotPoint] = []
    for line in (raw_text or "").split("\n"):
        match = PLOT_LINE_RE.search(line)
        if not match:
            continue
        sequence = start_plot_number + len(points) + 1
        chapter = match.group("chapter")
        points.append(PlotPoint(
            id=plot_point_id(batch_index, sequence),
            content=line,
            scene=match.group("scene").strip(),
            action=match.group("action").strip(),
            hook_type=match.group("hook").strip(),
            episode=int(match.group("episode")),
            batch_index=batch_index,
            sequence=sequence,
            status=PointStatus.UNUSED,
            source_chapter=int(chapter) if chapter else None,
        ))

    logger.debug(f"Parsed {len(points)} plot points for batch {batch_index}")
    return points


def parse_scripts(raw_text: str) -> List[Dict]:
    """Split multi-episode output on === and keep segments with a # 第N集 heading"""
    scripts = []
    for segment in (raw_text or "").split(SCRIPT_DELIMITER):
        segment = segment.strip()
        if not segment:
            continue
        heading = SCRIPT_HEADING_RE.search(segment)
        if not heading:
            continue
        scripts.append({"episode": int(heading.group(1)), "content": segment})
    return scripts


def strip_episode_heading(content: str) -> str:
    """Drop a leading # 第N集 heading line, if any"""
    lines = content.strip().split("\n", 1)
    if SCRIPT_HEADING_RE.match(lines[0].strip()):
        return lines[1].strip() if len(lines) > 1 else ""
    return content.strip()


def parse_chapter_order(file_name: str) -> int:
    """First integer in a chapter file name, or the unordered sentinel"""
    match = CHAPTER_ORDER_RE.search(file_name)
    return int(match.group(1)) if match else UNORDERED_CHAPTER


def format_points(points: List[PlotPoint]) -> str:
    return "\n".join(p.content for p in points)
