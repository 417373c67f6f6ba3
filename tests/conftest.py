"""
Shared fixtures for the Webtoon Adapter test suite.
"""

import pytest

from config_manager import AppConfig, GeminiEndpoint, RetryConfig
from data_models import Chapter, PlotBatch, Project
from extractors import parse_plot_points
from project_store import InMemoryProjectStore


def plot_lines(start: int, episodes):
    """Worker-style breakdown text, one plot line per episode entry"""
    lines = []
    for offset, episode in enumerate(episodes):
        number = start + offset
        lines.append(f"【剧情{number}】场景{number}，林凡对赵虎出手{number}，打脸蓄力，第{episode}集，状态：未用")
    return "\n".join(lines)


def make_batch(index: int, start_plot: int, episodes, chapter_range: str = "1-6", **kwargs) -> PlotBatch:
    text = plot_lines(start_plot + 1, episodes)
    return PlotBatch(
        index=index,
        chapter_range=chapter_range,
        content=text,
        points=parse_plot_points(text, index, start_plot),
        **kwargs,
    )


def make_chapters(count: int):
    return [
        Chapter(id=f"chap-{n}", name=f"第{n}章", content=f"第{n}章的正文内容。", order=n)
        for n in range(1, count + 1)
    ]


@pytest.fixture
def app_config():
    """Configuration with a fully specified Gemini endpoint"""
    return AppConfig(
        retry=RetryConfig(rate_limit_wait_seconds=60, max_api_retries=3),
        models={"gemini-test": {"provider": "gemini", "model_name": "gemini-test", "api_key": "test-key"}},
        breakdown_model="gemini-test",
        script_model="gemini-test",
    )


@pytest.fixture
def gemini_endpoint():
    return GeminiEndpoint(model_name="gemini-test", api_key="test-key")


@pytest.fixture
def store():
    return InMemoryProjectStore()


@pytest.fixture
def sample_project():
    """Twelve chapters, batch size six, nothing generated yet"""
    return Project(id="proj-test", title="测试小说", chapters=make_chapters(12), batch_size=6, max_retries=3)
