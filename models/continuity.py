"""
连续性状态模型
滚动摘要与禁用短语集合，每完成一章折叠一次
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ContinuityState:
    """连续性状态（不可变，每次折叠返回新实例）"""

    running_summary: str = ""
    forbidden_phrases: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """按持久化键名导出"""
        return {
            "currentSummary": self.running_summary,
            "forbiddenPhrases": list(self.forbidden_phrases),
        }


def merge_phrases(existing: Iterable[str], new_phrases: Iterable[str]) -> tuple[str, ...]:
    """有序并集：保留已有顺序，新短语按收到的顺序追加，区分大小写"""
    merged: dict[str, None] = dict.fromkeys(existing)
    for phrase in new_phrases:
        if isinstance(phrase, str) and phrase.strip():
            merged.setdefault(phrase, None)
    return tuple(merged)


def apply_continuity(
    state: ContinuityState,
    new_summary: str,
    new_phrases: Iterable[str],
) -> ContinuityState:
    """折叠一章的连续性结果

    摘要整体替换（由生成步骤负责合并），禁用短语做集合并集，只增不减。
    """
    return ContinuityState(
        running_summary=new_summary,
        forbidden_phrases=merge_phrases(state.forbidden_phrases, new_phrases),
    )
