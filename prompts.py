"""
Prompt texts for the four model roles of the adaptation pipeline.

The loop treats every string here as opaque; only the aligner's habit of
emitting the PASS token matters to the protocol.
"""

from functools import lru_cache
from typing import Callable, List, Optional

from data_models import Chapter, PlotPoint, ScriptFile
from extractors import format_points

WORKER_LABELS = {
    "breakdown": "Breakdown Worker",
    "script": "Script Worker",
}

ALIGNER_LABELS = {
    "breakdown": "Breakdown Aligner",
    "script": "Webtoon Aligner",
}

# What each genre must keep when compressing the source text
GENRE_FOCUS = {
    "玄幻": "保留境界突破、越级碾压、打脸场景",
    "武侠": "保留境界突破、越级碾压、打脸场景",
    "都市": "保留身份反差、财富对比、真相大白",
    "言情": "保留误会产生、虐心痛苦、甜宠片段",
    "古言": "保留误会产生、虐心痛苦、甜宠片段",
    "悬疑": "保留关键线索、反转时刻、真相揭露",
    "推理": "保留关键线索、反转时刻、真相揭露",
    "科幻": "保留危机爆发、异能觉醒、黑科技展示",
    "末世": "保留危机爆发、异能觉醒、黑科技展示",
    "重生": "保留前世今生对比、先知优势、打脸仇敌",
}

PLOT_TEMPLATE = "【剧情n】[场景]，[角色A]对[角色B][做了什么]，[情绪钩子类型]，第X集，状态：未用"

PLOT_EXAMPLE = """【剧情1】宗门广场，林凡当众被长老废除修为，虐心痛点，第1集，状态：未用
【剧情2】后山禁地，林凡意外获得神秘玉佩，金手指觉醒，第1集，状态：未用
【剧情3】宗门大比，林凡一招击败嘲讽他的师兄，打脸蓄力，第2集，状态：未用"""

SCRIPT_TEMPLATE = """# 第X集 [集标题]
## 场景1：[地点] [日/夜]
[画面描述]
角色名：台词
（旁白/内心OS）
...
===
# 第X+1集 [集标题]
..."""

VERDICT_RULES = """[输出要求]
- 逐项列出发现的问题，指明具体位置与修改方向。
- 只有完全符合标准时，才在报告最后单独一行输出：状态：PASS
- 存在任何问题时，不得出现 PASS 字样，最后一行输出：状态：FAIL"""


def genre_focus(novel_type: str) -> str:
    return GENRE_FOCUS.get(novel_type, "保留核心冲突与情绪爆点")


@lru_cache(maxsize=64)
def breakdown_worker_system_prompt(novel_type: str, batch_size: int) -> str:
    return f"""[角色]
你是一名"网文改编拆解专员(Breakdown Worker)"。
任务：读取{batch_size}章小说原文，提取冲突、识别情绪钩子，并按模板输出剧情拆解列表。

[标准]
1. 冲突分级：⭐⭐⭐核心冲突 / ⭐⭐次级冲突 / ⭐过渡冲突（过渡冲突通常压缩或删除）。
2. 情绪钩子评分低于6分的剧情点必须删除。
3. 高强度钩子(10-9分)单独成集；中强度(8-7分)每集1-2个剧情点；低强度(6分)每集2-3个剧情点。
4. 剧情编号必须接续上一批次，集数不得跳号。
5. 忠实原著，不脑补不存在的情节。
6. 类型适配（{novel_type}）：{genre_focus(novel_type)}。

[输出]
直接输出剧情列表，每行一个剧情点，严格遵循格式：
{PLOT_TEMPLATE}"""


@lru_cache(maxsize=64)
def breakdown_aligner_system_prompt(novel_type: str, batch_size: int) -> str:
    return f"""[角色]
你是"网文改编剧情拆解质检员(Breakdown Aligner)"。
任务：对照{batch_size}章小说原文检查剧情拆解的质量。

[检查维度]
1. 剧情点描述规范：格式完整，场景、角色、动作、钩子齐全。
2. 分集合理性：每集剧情点数量与钩子强度匹配，集数连续不跳号。
3. 编号连续性：剧情编号接续上一批次。
4. 原文还原度：不遗漏关键冲突，不曲解人物关系。
5. 类型符合度（{novel_type}）：{genre_focus(novel_type)}。

{VERDICT_RULES}"""


@lru_cache(maxsize=64)
def script_worker_system_prompt(novel_type: str) -> str:
    return f"""[角色]
你是一名"漫剧编剧(Script Worker)"，负责把剧情点改编成可直接分镜的漫剧剧本。

[规则]
1. 每个剧情点都必须落到对应集数的剧本中，不得遗漏或挪动集数。
2. 每集500-800字，以冲突对话和动作画面为主，删去环境描写与长篇内心戏。
3. 每集开头使用"# 第X集"标题，集与集之间用单独一行 === 分隔。
4. 与上一集剧本保持人物状态和语气的连续。
5. 类型适配（{novel_type}）：{genre_focus(novel_type)}。"""


@lru_cache(maxsize=64)
def script_aligner_system_prompt(novel_type: str) -> str:
    return f"""[角色]
你是"漫剧剧本质检员(Webtoon Aligner)"。
任务：对照剧情点与小说原文检查剧本。

[检查维度]
1. 剧情点覆盖：每个剧情点都在对应集数中出现。
2. 格式规范："# 第X集"标题与 === 分隔符齐全。
3. 节奏与字数：每集500-800字，开头有钩子，结尾有悬念。
4. 连续性：与上一集剧本衔接自然。
5. 类型符合度（{novel_type}）：{genre_focus(novel_type)}。

{VERDICT_RULES}"""


def chapters_text(chapters: List[Chapter]) -> str:
    return "\n\n".join(f"Chapter {c.name}:\n{c.content}" for c in chapters)


def breakdown_task(
    novel_type: str,
    description: str,
    chapters: List[Chapter],
    last_episode: int,
    last_plot_number: int,
    previous_batch_tail: str = "",
    next_batch_start_episode: Optional[int] = None,
) -> str:
    """Worker task for one breakdown batch, carrying the numbering context"""
    bridge = ""
    if next_batch_start_episode is not None:
        bridge = (
            f"\n- 重要：这是对中间批次的重构。下一批次的剧情开始于第 {next_batch_start_episode} 集，"
            f"请让本批次的结尾剧情自然过渡到下一批次的开始。"
        )
    previous = f"\n[PREVIOUS BATCH PLOT POINTS]:\n{previous_batch_tail}\n" if previous_batch_tail else ""

    return f"""TASK: Breakdown the following {len(chapters)} chapters.

[NOVEL TYPE]: {novel_type}
[NOVEL DESCRIPTION]: {description}

[ORIGINAL NOVEL]:
{chapters_text(chapters)}

[CONTEXT]:
- The previous batch ended at Episode {last_episode}.
- The previous batch ended at Plot Number {last_plot_number}.

[INSTRUCTION]:
- You can continue with Episode {last_episode} if the plot connects directly to the previous cliffhanger, OR start with Episode {last_episode + 1} if it's a new scene.
- DO NOT SKIP EPISODE NUMBERS.
- Start plot numbering from 【剧情{last_plot_number + 1}】.{bridge}
{previous}
[OUTPUT TEMPLATE]:
{PLOT_TEMPLATE}

[OUTPUT EXAMPLE]:
{PLOT_EXAMPLE}
"""


def breakdown_aligner_builder(task: str) -> Callable[[str], str]:
    def build(output: str) -> str:
        return f"TASK: Check the quality of this breakdown.\n\n{task}\n[GENERATED BREAKDOWN]:\n{output}\n"
    return build


def script_task(
    novel_type: str,
    description: str,
    points: List[PlotPoint],
    episodes: List[int],
    chapters: List[Chapter],
    previous_batch_tail: str = "",
    previous_script: Optional[ScriptFile] = None,
    continued_episode: Optional[int] = None,
) -> str:
    """Worker task for scripting every episode of one batch"""
    sections = [
        f"TASK: Write Scripts for Episodes {episodes[0]}-{episodes[-1]}.",
        f"[NOVEL TYPE]: {novel_type}\n[NOVEL DESCRIPTION]: {description}",
        f"[PLOT POINTS]:\n{format_points(points)}",
        f"[ORIGINAL NOVEL]:\n{chapters_text(chapters)}",
    ]
    if previous_batch_tail:
        sections.append(f"[PREVIOUS BATCH PLOT POINTS(For Plot Continuity)]:\n{previous_batch_tail}")
    if previous_script is not None:
        sections.append(
            f"[PREVIOUS EPISODE SCRIPT(For Plot Continuity)]:\n{previous_script.base_content}"
        )
    if continued_episode is not None:
        sections.append(
            f"[CONTINUED EPISODE]: Episode {continued_episode} already has a script from the previous batch. "
            f"Write only its continuation under the heading # 第{continued_episode}集; "
            f"do not rewrite the part that already exists."
        )
    sections.append(f"[OUTPUT TEMPLATE]:\n{SCRIPT_TEMPLATE}")
    return "\n\n".join(sections) + "\n"


def script_aligner_builder(task: str) -> Callable[[str], str]:
    def build(output: str) -> str:
        return f"TASK: Check consistency of these scripts.\n\n{task}\n[GENERATED SCRIPT]:\n{output}\n"
    return build
