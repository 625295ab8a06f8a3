"""
数据模型模块
定义项目中使用的各种数据结构
"""

from .continuity import ContinuityState, apply_continuity
from .document import Document
from .processing_state import PipelinePhase, ProcessingState, derive_phase
from .story import ChapterOutline, ChapterRecord, CharacterProfile, NovelOutline, StoryBible

__all__ = [
    "StoryBible",
    "CharacterProfile",
    "NovelOutline",
    "ChapterOutline",
    "ChapterRecord",
    "ContinuityState",
    "apply_continuity",
    "Document",
    "ProcessingState",
    "PipelinePhase",
    "derive_phase",
]
