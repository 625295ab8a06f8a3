"""
检索索引中的文档模型
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Document:
    """索引文档，metadata 至少包含 type，章节文档另带 chapter"""

    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.metadata.get("type", "")

    @property
    def label(self) -> str:
        """用于提示词中的上下文标签，例如 "chapter 3" 或 "story_bible" """
        chapter = self.metadata.get("chapter")
        return f"{self.type} {chapter}" if chapter is not None else self.type
