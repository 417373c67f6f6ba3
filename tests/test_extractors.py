"""
Tests for the structured extractors.
"""

import pytest

from data_models import PointStatus, UNORDERED_CHAPTER
from extractors import parse_chapter_order, parse_plot_points, parse_scripts, strip_episode_heading


class TestParsePlotPoints:
    """Plot point mining from breakdown output"""

    def test_parses_fields_and_assigns_synthetic_ids(self):
        text = (
            "【剧情1】宗门广场，林凡当众被长老废除修为，虐心痛点，第1集，状态：未用\n"
            "【剧情2】后山禁地，林凡意外获得神秘玉佩，金手指觉醒，第1集，状态：未用"
        )
        points = parse_plot_points(text, batch_index=2, start_plot_number=10)

        assert [p.id for p in points] == ["batch-2-plot-11", "batch-2-plot-12"]
        assert [p.sequence for p in points] == [11, 12]
        first = points[0]
        assert first.scene == "宗门广场"
        assert first.action == "林凡当众被长老废除修为"
        assert first.hook_type == "虐心痛点"
        assert first.episode == 1
        assert first.batch_index == 2
        assert first.status == PointStatus.UNUSED
        assert first.content == text.split("\n")[0]

    def test_model_numbering_is_ignored(self):
        text = "【剧情99】场景，动作，钩子，第3集\n【剧情7】场景，动作，钩子，第4集"
        points = parse_plot_points(text, 0, 0)
        assert [p.id for p in points] == ["batch-0-plot-1", "batch-0-plot-2"]

    def test_ascii_commas_are_accepted(self):
        points = parse_plot_points("【剧情1】场景, 动作, 钩子, 第5集", 0, 0)
        assert len(points) == 1
        assert points[0].episode == 5
        assert points[0].action == "动作"

    def test_non_matching_lines_are_dropped(self):
        text = "\n".join([
            "# 第一批次剧情拆解",
            "【剧情1】场景，动作，钩子，第1集",
            "【剧情2】只有一个片段",
            "",
            "- 备注：本批次冲突密度达标",
            "【剧情3】场景，动作，钩子，第2集",
        ])
        points = parse_plot_points(text, 0, 0)
        assert [p.episode for p in points] == [1, 2]
        assert [p.sequence for p in points] == [1, 2]

    def test_optional_source_chapter(self):
        points = parse_plot_points("【剧情1】场景，动作，钩子，第2集，来源第14章", 1, 0)
        assert points[0].source_chapter == 14

        points = parse_plot_points("【剧情1】场景，动作，钩子，第2集，状态：未用", 1, 0)
        assert points[0].source_chapter is None

    def test_empty_input(self):
        assert parse_plot_points("", 0, 0) == []
        assert parse_plot_points(None, 0, 0) == []

    def test_parsing_is_idempotent(self):
        text = "【剧情1】场景，动作，钩子，第1集\n【剧情2】场景，动作，钩子，第2集"
        assert parse_plot_points(text, 3, 7) == parse_plot_points(text, 3, 7)


class TestParseScripts:
    """Episode splitting of script output"""

    def test_splits_on_delimiter(self):
        scripts = parse_scripts("# 第3集\nfoo\n===\n# 第4集\nbar")
        assert scripts == [
            {"episode": 3, "content": "# 第3集\nfoo"},
            {"episode": 4, "content": "# 第4集\nbar"},
        ]

    def test_segments_without_heading_are_dropped(self):
        text = "以下是剧本：\n===\n# 第 5 集 觉醒\n画面：玉佩发光\n===\n\n===\n谢谢阅读"
        scripts = parse_scripts(text)
        assert len(scripts) == 1
        assert scripts[0]["episode"] == 5
        assert scripts[0]["content"].startswith("# 第 5 集 觉醒")

    def test_heading_may_follow_preamble(self):
        scripts = parse_scripts("剧本正文\n# 第7集\n内容")
        assert scripts == [{"episode": 7, "content": "剧本正文\n# 第7集\n内容"}]

    def test_empty_input(self):
        assert parse_scripts("") == []

    @pytest.mark.parametrize("content, expected", [
        ("# 第2集\n续写\n画面", "续写\n画面"),
        ("  # 第 2 集 反转\n续写", "续写"),
        ("# 第2集", ""),
        ("续写没有标题", "续写没有标题"),
    ])
    def test_strip_episode_heading(self, content, expected):
        assert strip_episode_heading(content) == expected


class TestParseChapterOrder:

    @pytest.mark.parametrize("file_name, expected", [
        ("12.txt", 12),
        ("第3章 觉醒.txt", 3),
        ("chapter-007-final-2.txt", 7),
        ("序章.txt", UNORDERED_CHAPTER),
    ])
    def test_first_integer_wins(self, file_name, expected):
        assert parse_chapter_order(file_name) == expected
