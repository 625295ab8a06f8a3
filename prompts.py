"""
LLM提示词模板模块
定义故事圣经、大纲、章节与连续性审校所用的提示词、系统指令和响应结构
"""
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from models.document import Document
from models.story import ChapterOutline, StoryBible


DEFAULT_STORY_BIBLE_TEMPLATE = """You are a master world-builder and storyteller. Based on the user's core idea, expand it into a "Story Bible" containing the foundational elements of a compelling novel. Flesh out each of the following 8 areas in detail. Respond ONLY with the JSON object adhering to the provided schema.

1.  **Compelling Characters**: Create a list of main characters with brief but evocative descriptions of their personalities, motivations, and arcs. For each character, define a Linguistic SCI (Stylistic Compression Induction). This is a one-sentence 'Word Painting' anchor (e.g., 'Responds in insightful musings of pithy erudity'). This SCI must act as a compression filter for the character's voice, forcing their internal logic through a specific stylistic nozzle.

Linguistic SCI examples:

The Neurotic Virtuoso: "Responds in anxious stutters of Shakespearean grandiosity."
The Bored Deity: "Responds in apathetic shrugs of cosmic, world-shattering prophecy."
The Grumpy Muse: "Responds in resentful mutterings of breathtakingly beautiful lyrical prose."
The Sarcastic Saint: "Responds in biting irony of sincere, wholesome moral advice."
The Hard-Boiled Scholar: "Responds in noir-detective descriptions of academic history."
2.  **Engaging Conflict**: Describe the central conflict (internal and external) that drives the story. What are the stakes?
3.  **Vivid Setting & World-Building**: Describe the world, its atmosphere, and key locations. How does the setting impact the story?
4.  **Clear Theme**: What is the central theme or message of the story?
5.  **Distinctive Voice & Style**: Define the narrative voice (e.g., third-person limited, first-person) and the overall writing style (e.g., gritty, lyrical, fast-paced).
6.  **Sharp & Purposeful Dialogue**: Describe the style of dialogue. Is it witty, formal, subtext-heavy?
7.  **Satisfying Conclusion**: Briefly outline the intended trajectory of the ending. How will the central conflict be resolved?
8.  **Originality**: What unique twist, concept, or perspective makes this story stand out?

User Prompt: "{prompt}\""""

DEFAULT_OUTLINE_TEMPLATE = """You are a world-class novelist and story planner. Given the user's initial prompt and a detailed "Story Bible" of foundational elements, generate a detailed plot outline for a novel. You may freely write 200+ chapters.

**CRITICAL INSTRUCTIONS:**
- The plot must be coherent and logically sound from beginning to end.
- Each chapter's events must naturally follow from the previous one, creating a strong chain of cause and effect.
- Character actions and motivations must be consistent with their established profiles in the Story Bible.
- Avoid plot holes, deus ex machina, or illogical leaps in the narrative.

The outline should have a compelling title, a brief overall summary, and a list of detailed chapters. The number of chapters should be appropriate for the story and desired length. Each chapter must have a title and a detailed summary of its key events, character developments, and plot points, all consistent with the provided Story Bible. Respond ONLY with the JSON object adhering to the provided schema.

User Prompt: "{prompt}"{length_instruction}

Story Bible:
{story_bible}"""

DEFAULT_CHAPTER_SYSTEM_INSTRUCTION = """You are a master storyteller with a captivating and eloquent writing style. Your task is to write a single chapter for a novel based on the provided outline for this chapter and relevant context from the story so far (story bible, plot summary, previous chapters). Use this context to ensure consistency in plot, character voice, and tone. Flesh out the scenes, write compelling dialogue, and build a vivid world.

**STYLE GUIDELINES:**
- Show, don't just tell. Use sensory details.
- Avoid clichés and repetitive descriptions.
- Adhere strictly to any "FORBIDDEN PHRASES" listed in the user prompt.

Your response must be ONLY the text of the chapter itself. Do not repeat the chapter title or summary from the prompt. Use markdown for emphasis (e.g., *this text will be italicized*). Do not add any other extra commentary or formatting. Begin writing the chapter's content immediately."""

DEFAULT_SUMMARY_SYSTEM_INSTRUCTION = """You are an expert story continuity editor and linguistic analyst. You will be given the previous summary of a novel-in-progress and the full text of the most recent chapter.

**YOUR TASKS:**
1. Update the summary: Seamlessly integrate the events of the new chapter into the summary. Keep it concise and accurate.
2. Identify linguistic patterns: CRITICAL: Identify the "AI-isms", repetitive phrases, or clichés overused in this chapter (e.g., "A testament to," "The air was thick with," "Elias couldn't help but," "The cold reality set in"). Look for repetitive sentence structures as well.

Respond ONLY with a JSON object containing the updated summary and the list of identified phrases."""

NO_RETRIEVED_CONTEXT = "No specific documents were retrieved. Rely on the summary and story bible."


STORY_BIBLE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "characters": {
            "type": "ARRAY",
            "description": "A list of main characters with their profiles.",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING", "description": "The character's name."},
                    "description": {
                        "type": "STRING",
                        "description": "A detailed description of the character's personality, motivations, and arc.",
                    },
                },
                "required": ["name", "description"],
            },
        },
        "conflict": {"type": "STRING", "description": "The central conflict (internal and external) that drives the story and the stakes involved."},
        "setting": {"type": "STRING", "description": "A description of the world, its atmosphere, and key locations, and how the setting impacts the story."},
        "theme": {"type": "STRING", "description": "The central theme or message of the story."},
        "voiceAndStyle": {"type": "STRING", "description": "The narrative voice (e.g., third-person limited) and overall writing style (e.g., gritty, lyrical)."},
        "dialogueStyle": {"type": "STRING", "description": "The style of dialogue (e.g., witty, formal, subtext-heavy)."},
        "conclusion": {"type": "STRING", "description": "The intended trajectory of the ending and how the central conflict will be resolved."},
        "originality": {"type": "STRING", "description": "The unique twist, concept, or perspective that makes this story stand out."},
    },
    "required": [
        "characters", "conflict", "setting", "theme",
        "voiceAndStyle", "dialogueStyle", "conclusion", "originality",
    ],
}

OUTLINE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING", "description": "A compelling and creative title for the novel."},
        "summary": {"type": "STRING", "description": "A brief, one-paragraph summary of the entire novel's plot."},
        "chapters": {
            "type": "ARRAY",
            "description": "A list of chapters that form the novel's structure.",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "chapter_title": {"type": "STRING", "description": "The title of this specific chapter."},
                    "chapter_summary": {
                        "type": "STRING",
                        "description": "A detailed summary of this chapter's key events, character developments, and plot points.",
                    },
                },
                "required": ["chapter_title", "chapter_summary"],
            },
        },
    },
    "required": ["title", "summary", "chapters"],
}

CONTINUITY_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "summary": {
            "type": "STRING",
            "description": "The updated, concise plot summary incorporating the new chapter.",
        },
        "identifiedAIisms": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "A list of overused phrases, repetitive sentence starts, or AI clichés found in the provided chapter text.",
        },
    },
    "required": ["summary", "identifiedAIisms"],
}


_SLOT_PATTERN = re.compile(r"\{(prompt|story_bible|length_instruction)\}")


def _env_template(name: str, default: str) -> str:
    """读取环境变量中的模板，支持使用 \\n 表示换行"""
    template = os.getenv(name)
    if not template:
        return default
    return template.replace("\\n", "\n")


@dataclass
class PromptsConfig:
    """可自定义的提示词配置

    story_bible 与 outline 模板可使用命名插槽 {prompt}、{story_bible}、{length_instruction}。
    """

    story_bible: str = DEFAULT_STORY_BIBLE_TEMPLATE
    outline: str = DEFAULT_OUTLINE_TEMPLATE
    chapter_system: str = DEFAULT_CHAPTER_SYSTEM_INSTRUCTION
    summary_system: str = DEFAULT_SUMMARY_SYSTEM_INSTRUCTION

    @classmethod
    def from_env(cls) -> "PromptsConfig":
        """从环境变量加载自定义模板，未设置的使用默认值"""
        return cls(
            story_bible=_env_template("STORY_BIBLE_PROMPT_TEMPLATE", DEFAULT_STORY_BIBLE_TEMPLATE),
            outline=_env_template("OUTLINE_PROMPT_TEMPLATE", DEFAULT_OUTLINE_TEMPLATE),
            chapter_system=_env_template("CHAPTER_SYSTEM_INSTRUCTION", DEFAULT_CHAPTER_SYSTEM_INSTRUCTION),
            summary_system=_env_template("SUMMARY_SYSTEM_INSTRUCTION", DEFAULT_SUMMARY_SYSTEM_INSTRUCTION),
        )


def fill_slots(template: str, slots: Dict[str, str]) -> str:
    """用命名插槽的值填充模板，模板中未提供值的插槽保持原样"""

    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        return slots[name] if name in slots else match.group(0)

    return _SLOT_PATTERN.sub(_replace, template)


def _has_slot(template: str, name: str) -> bool:
    return "{" + name + "}" in template


def length_instruction(page_count: Optional[int], words_per_page: int = 250) -> str:
    """页数转换为近似字数要求（软性目标）；页数非正时不附加要求"""
    if not page_count or page_count <= 0:
        return ""
    word_count = page_count * words_per_page
    return f" The target length is approximately {word_count} words."


def story_bible_prompt(prompt: str, config: Optional[PromptsConfig] = None) -> str:
    """
    生成故事圣经的提示词
    """
    template = (config or PromptsConfig()).story_bible
    filled = fill_slots(template, {"prompt": prompt})
    if not _has_slot(template, "prompt"):
        filled = f'{filled}\n\nUser Prompt: "{prompt}"'
    return filled


def outline_prompt(prompt: str,
                   story_bible: StoryBible,
                   page_count: Optional[int] = None,
                   config: Optional[PromptsConfig] = None,
                   words_per_page: int = 250) -> str:
    """
    生成小说大纲的提示词
    """
    template = (config or PromptsConfig()).outline
    instruction = length_instruction(page_count, words_per_page)
    bible_json = story_bible.to_json()
    filled = fill_slots(template, {
        "prompt": prompt,
        "story_bible": bible_json,
        "length_instruction": instruction,
    })

    # 自定义模板缺少插槽时仍保证用户创意、篇幅要求与故事圣经进入提示词
    if not _has_slot(template, "prompt"):
        filled = f'{filled}\n\nUser Prompt: "{prompt}"'
    if instruction and not _has_slot(template, "length_instruction"):
        filled = f"{filled}\n{instruction.strip()}"
    if not _has_slot(template, "story_bible"):
        filled = f"{filled}\n\nStory Bible:\n{bible_json}"
    return filled


def forbidden_block(forbidden_phrases: Sequence[str]) -> str:
    """将禁用短语渲染为明确的负面约束"""
    if not forbidden_phrases:
        return ""
    return (
        "\n**FORBIDDEN PHRASES & CONSTRAINTS:**\n"
        f"Do not use the following overused phrases: {', '.join(forbidden_phrases)}.\n"
        'Vary sentence starts. Avoid starting multiple sentences with "As he..." or "The [Noun]...".\n'
    )


def retrieved_context(documents: List[Document]) -> str:
    """渲染检索到的上下文文档"""
    if not documents:
        return NO_RETRIEVED_CONTEXT
    return "\n".join(
        f"--- CONTEXT from {doc.label} ---\n{doc.text}\n" for doc in documents
    )


def chapter_prompt(chapter: ChapterOutline,
                   story_bible: StoryBible,
                   running_summary: str,
                   chapter_index: int,
                   retrieved: List[Document],
                   previous_chapter: Optional[Document] = None,
                   forbidden_phrases: Sequence[str] = ()) -> str:
    """
    生成单章写作提示词
    """
    previous_context = ""
    if previous_chapter is not None:
        previous_context = (
            f"--- CONTEXT: Immediately Preceding Chapter (Chapter {chapter_index}) ---\n"
            f"{previous_chapter.text}\n\n"
        )

    dynamic_context = (
        f"--- CONTEXT: Running Plot Summary ---\n{running_summary}\n\n"
        f"{previous_context}"
        f"--- CONTEXT: Additional Retrieved Story Documents ---\n{retrieved_context(retrieved)}"
    )

    return f"""
You will write a chapter for a novel.
{forbidden_block(forbidden_phrases)}
**CORE STORY ELEMENTS (STORY BIBLE):**
- **Overall Theme**: {story_bible.theme}
- **Narrative Voice & Writing Style**: {story_bible.voice_and_style}
- **Setting**: {story_bible.setting}
- **Main Characters**:
{story_bible.character_roster}

---

**DYNAMIC CONTEXT FROM STORY SO FAR:**
{dynamic_context}

---

**CURRENT CHAPTER TO WRITE:**
- **Chapter Title**: {chapter.chapter_title}
- **Chapter Summary/Goal**: {chapter.chapter_summary}

Based on all the information above, please write the full content for this chapter.
"""


def summary_prompt(previous_summary: str, new_chapter_text: str) -> str:
    """
    生成连续性审校（更新摘要并识别陈词滥调）的提示词
    """
    return f"""
PREVIOUS SUMMARY:
{previous_summary}

---

NEW CHAPTER TEXT:
{new_chapter_text}

---

Based on the previous summary and the new chapter, please provide the updated summary and identify any linguistic patterns to avoid in the future.
"""
