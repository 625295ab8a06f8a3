"""
故事相关的数据模型：故事圣经、大纲与章节
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any

_HEADING_PATTERN = re.compile(r"^Chapter (\d+): (.*)$")


@dataclass
class CharacterProfile:
    """人物档案"""

    name: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CharacterProfile":
        return cls(name=data.get("name", ""), description=data.get("description", ""))

    def __str__(self) -> str:
        return f"{self.name}: {self.description}"


@dataclass
class StoryBible:
    """故事圣经模型

    每次运行只生成一次，之后不再修改；持久化时保留模型返回的字段名。
    """

    characters: list[CharacterProfile] = field(default_factory=list)
    conflict: str = ""
    setting: str = ""
    theme: str = ""
    voice_and_style: str = ""
    dialogue_style: str = ""
    conclusion: str = ""
    originality: str = ""

    def to_dict(self) -> dict[str, Any]:
        """转换为字典格式（用于JSON序列化）"""
        return {
            "characters": [c.to_dict() for c in self.characters],
            "conflict": self.conflict,
            "setting": self.setting,
            "theme": self.theme,
            "voiceAndStyle": self.voice_and_style,
            "dialogueStyle": self.dialogue_style,
            "conclusion": self.conclusion,
            "originality": self.originality,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoryBible":
        """从字典创建实例（用于JSON反序列化）"""
        return cls(
            characters=[
                CharacterProfile.from_dict(c)
                for c in data.get("characters", []) or []
                if isinstance(c, dict)
            ],
            conflict=data.get("conflict", ""),
            setting=data.get("setting", ""),
            theme=data.get("theme", ""),
            voice_and_style=data.get("voiceAndStyle", ""),
            dialogue_style=data.get("dialogueStyle", ""),
            conclusion=data.get("conclusion", ""),
            originality=data.get("originality", ""),
        )

    def to_json(self) -> str:
        """序列化为缩进两格的JSON文本（检索索引与提示词使用）"""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    @property
    def character_roster(self) -> str:
        """每行一个人物的名册"""
        return "\n".join(str(c) for c in self.characters)


@dataclass
class ChapterOutline:
    """单章大纲"""

    chapter_title: str
    chapter_summary: str

    def to_dict(self) -> dict[str, Any]:
        return {"chapter_title": self.chapter_title, "chapter_summary": self.chapter_summary}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChapterOutline":
        return cls(
            chapter_title=data.get("chapter_title", ""),
            chapter_summary=data.get("chapter_summary", ""),
        )

    @property
    def query_text(self) -> str:
        """用于检索上下文的查询文本"""
        return f"{self.chapter_title} {self.chapter_summary}"


@dataclass
class NovelOutline:
    """小说大纲模型，章节列表即固定的写作计划"""

    title: str
    summary: str
    chapters: list[ChapterOutline] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典格式（用于JSON序列化）"""
        return {
            "title": self.title,
            "summary": self.summary,
            "chapters": [c.to_dict() for c in self.chapters],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NovelOutline":
        """从字典创建实例（用于JSON反序列化）"""
        return cls(
            title=data.get("title", ""),
            summary=data.get("summary", ""),
            chapters=[
                ChapterOutline.from_dict(c)
                for c in data.get("chapters", []) or []
                if isinstance(c, dict)
            ],
        )

    @property
    def chapter_count(self) -> int:
        return len(self.chapters)


@dataclass(frozen=True)
class ChapterRecord:
    """已完成的章节，追加后不再修改"""

    number: int
    title: str
    text: str

    @staticmethod
    def heading(number: int, title: str) -> str:
        """章节标题行（含结尾空行）"""
        return f"Chapter {number}: {title}\n\n"

    @classmethod
    def finalize(cls, index: int, title: str, body: str) -> "ChapterRecord":
        """由0起的章节序号、标题和正文生成定稿章节"""
        number = index + 1
        return cls(number=number, title=title, text=cls.heading(number, title) + body + "\n\n")

    @classmethod
    def from_text(cls, number: int, text: str) -> "ChapterRecord":
        """从持久化的章节文本还原记录"""
        first_line = text.split("\n", 1)[0]
        match = _HEADING_PATTERN.match(first_line)
        title = match.group(2) if match else ""
        return cls(number=number, title=title, text=text)

    @property
    def document_id(self) -> str:
        return f"chapter_{self.number}"
