"""
生成流水线的运行状态模型
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class PipelinePhase(str, Enum):
    """由持久化数据推导出的流水线阶段"""

    EMPTY = "empty"
    BIBLE_READY = "bible_ready"
    OUTLINE_READY = "outline_ready"
    CHAPTER = "chapter"
    COMPLETE = "complete"
    EXTERNAL = "external"


def derive_phase(
    has_story_bible: bool,
    has_outline: bool,
    chapters_done: int,
    total_chapters: int,
    is_external: bool = False,
) -> PipelinePhase:
    """根据已存在的持久化键与章节数推导阶段

    外部导入的文稿优先于所有生成状态。
    """
    if is_external:
        return PipelinePhase.EXTERNAL
    if not has_story_bible:
        return PipelinePhase.EMPTY
    if not has_outline:
        return PipelinePhase.BIBLE_READY
    if chapters_done == 0:
        return PipelinePhase.OUTLINE_READY if total_chapters else PipelinePhase.COMPLETE
    if chapters_done >= total_chapters:
        return PipelinePhase.COMPLETE
    return PipelinePhase.CHAPTER


@dataclass
class ProcessingState:
    """处理状态模型"""

    total_chapters: int = 0
    completed_chapters: int = 0
    current_chapter: int | None = None
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None
    current_phase: str = "initialization"
    resumed_from: int | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def elapsed_time(self) -> float:
        """计算已用时间（秒）"""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    @property
    def progress_percentage(self) -> float:
        """计算进度百分比"""
        if self.total_chapters == 0:
            return 0.0
        return (self.completed_chapters / self.total_chapters) * 100

    def start_chapter(self, index: int) -> None:
        """进入某一章的生成"""
        self.current_chapter = index
        self.current_phase = "chapter"

    def finish_chapter(self) -> None:
        """记录一章完成"""
        self.completed_chapters += 1

    def add_error(self, error: str) -> None:
        """添加错误信息"""
        self.errors.append(f"[{datetime.now().strftime('%H:%M:%S')}] {error}")

    def complete(self) -> None:
        """标记处理完成"""
        self.end_time = datetime.now()
        self.current_chapter = None
        self.current_phase = "completed"

    def fail(self, error: str) -> None:
        """标记处理失败"""
        self.end_time = datetime.now()
        self.current_phase = "failed"
        self.add_error(error)

    def get_summary(self) -> dict[str, Any]:
        """获取处理摘要"""
        return {
            "total_chapters": self.total_chapters,
            "completed_chapters": self.completed_chapters,
            "current_chapter": self.current_chapter,
            "progress_percentage": round(self.progress_percentage, 2),
            "elapsed_time": round(self.elapsed_time, 2),
            "current_phase": self.current_phase,
            "resumed_from": self.resumed_from,
            "errors_count": len(self.errors),
        }
