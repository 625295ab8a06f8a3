"""
小说生成服务模块
核心业务逻辑：故事圣经 -> 大纲 -> 逐章生成，可从中断处恢复
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from config import get_generation_config
from exceptions import EncodingError, IncompleteStateError, PipelineError, ValidationError
from models.continuity import ContinuityState, apply_continuity, merge_phrases
from models.processing_state import ProcessingState, derive_phase
from models.story import ChapterRecord, NovelOutline, StoryBible
from prompts import (
    CONTINUITY_SCHEMA,
    OUTLINE_SCHEMA,
    STORY_BIBLE_SCHEMA,
    PromptsConfig,
    chapter_prompt,
    outline_prompt,
    story_bible_prompt,
    summary_prompt,
)
from services.llm_service import LLMService, create_llm_service
from services.retrieval_index import RetrievalIndex
from services.state_store import JsonFileStateStore, StateKeys, StateStore, has_saved_state
from tokenizer import count_tokens, exceeds_budget
from validators import validate_page_count, validate_prompt

logger = logging.getLogger(__name__)

STORY_BIBLE_DOC_ID = "story_bible"

# 失败时展示给用户的阶段名称
_PHASE_LABELS = {
    "initialization": "initialization",
    "reset": "state reset",
    "story_bible": "Story Bible generation",
    "outline": "outline generation",
    "indexing": "context indexing",
    "loading": "loading saved progress",
    "chapter": "Chapter {number} generation",
    "continuity": "Chapter {number} continuity audit",
}


def _safe_token_count(text: str) -> Optional[int]:
    """token数量仅用于日志，编码器不可用时返回None"""
    try:
        return count_tokens(text)
    except EncodingError as e:
        logger.debug(f"跳过token统计: {e}")
        return None


class NovelGenerationService:
    """小说生成服务类

    单一写入者：同一时刻只有一个生成请求在进行，章节严格按顺序生成。
    """

    def __init__(self,
                 llm_service: Optional[LLMService] = None,
                 state_store: Optional[StateStore] = None,
                 retrieval_index: Optional[RetrievalIndex] = None,
                 prompts_config: Optional[PromptsConfig] = None,
                 progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.generation_config = get_generation_config()
        self.llm_service = llm_service if llm_service is not None else create_llm_service()
        self.state_store = (
            state_store if state_store is not None
            else JsonFileStateStore(self.generation_config.state_dir)
        )
        # 空索引的 len() 为 0，不能用 or 判断
        self.retrieval_index = retrieval_index if retrieval_index is not None else RetrievalIndex()
        self.prompts_config = prompts_config if prompts_config is not None else PromptsConfig.from_env()
        self.progress_callback = progress_callback
        self.processing_state: Optional[ProcessingState] = None
        self._message = ""
        self._clear_memory()

    def _clear_memory(self) -> None:
        """丢弃内存中的运行数据"""
        self.initial_prompt = ""
        self.story_bible: Optional[StoryBible] = None
        self.outline: Optional[NovelOutline] = None
        self.novel_title = ""
        self.chapters: List[ChapterRecord] = []
        self.continuity = ContinuityState()
        self.external_content: Optional[str] = None
        self._chapter_buffer = ""

    # ------------------------------------------------------------------
    # 对外可观察的投影
    # ------------------------------------------------------------------

    @property
    def current_manuscript(self) -> str:
        """已完成章节 + 正在生成的章节文本"""
        if self.external_content is not None:
            return self.external_content
        return "".join(chapter.text for chapter in self.chapters) + self._chapter_buffer

    @property
    def forbidden_phrases(self) -> List[str]:
        return list(self.continuity.forbidden_phrases)

    async def has_saved_state(self) -> bool:
        return await has_saved_state(self.state_store)

    async def reset(self) -> None:
        """放弃当前运行：清空持久化状态与检索索引"""
        await self.state_store.clear()
        await self.retrieval_index.clear()
        self._clear_memory()
        logger.info("已重置生成状态")

    # ------------------------------------------------------------------
    # 新建运行
    # ------------------------------------------------------------------

    async def generate_novel(self, prompt: str, page_count: Optional[int] = None) -> Dict[str, Any]:
        """
        从创作提示生成完整小说

        Args:
            prompt: 小说创意
            page_count: 目标页数（可选，软性篇幅要求）

        Returns:
            Dict[str, Any]: 生成结果

        Raises:
            ValidationError: 提示为空（不会修改任何状态）
            PipelineError: 某个阶段失败，已持久化的进度保留
        """
        validate_prompt(prompt)
        pages = validate_page_count(page_count)

        self.processing_state = ProcessingState()
        self.llm_service.reset_usage()

        try:
            await self._run_fresh(prompt, pages)
        except Exception as e:
            raise self._fail(e) from e

        return self._build_result()

    async def _run_fresh(self, prompt: str, page_count: int) -> None:
        config = self.generation_config

        self._set_phase("reset", "Preparing a fresh run...")
        await self.reset()

        # 1. 故事圣经
        self._set_phase("story_bible", "Building the world: Creating the Story Bible...")
        bible_data = await self.llm_service.generate_structured(
            story_bible_prompt(prompt, self.prompts_config),
            STORY_BIBLE_SCHEMA,
            temperature=config.temperature_story_bible,
            label="story_bible",
        )
        self.story_bible = StoryBible.from_dict(bible_data)
        self.initial_prompt = prompt
        await self.state_store.put(StateKeys.STORY_BIBLE, bible_data)
        await self.state_store.put(StateKeys.INITIAL_PROMPT, prompt)
        await self.state_store.put(StateKeys.PAGE_COUNT, page_count)
        logger.info(f"故事圣经已生成，人物数: {len(self.story_bible.characters)}")

        # 2. 大纲
        self._set_phase("outline", "Drafting the Outline...")
        outline_data = await self.llm_service.generate_structured(
            outline_prompt(prompt, self.story_bible, page_count, self.prompts_config, config.words_per_page),
            OUTLINE_SCHEMA,
            temperature=config.temperature_outline,
            label="outline",
        )
        self.outline = NovelOutline.from_dict(outline_data)
        self.novel_title = self.outline.title
        await self.state_store.put(StateKeys.OUTLINE, outline_data)
        await self.state_store.put(StateKeys.NOVEL_TITLE, self.novel_title)
        logger.info(f"大纲已生成: 《{self.novel_title}》，共 {self.outline.chapter_count} 章")

        # 3. 检索索引
        self._set_phase("indexing", "Indexing the Story Bible...")
        await self.retrieval_index.upsert(
            STORY_BIBLE_DOC_ID, self.story_bible.to_json(), {"type": "story_bible"}
        )

        # 4. 初始连续性状态
        self.continuity = ContinuityState(running_summary=self.outline.summary)
        await self.state_store.put(StateKeys.CURRENT_SUMMARY, self.continuity.running_summary)

        await self._write_chapters(start_index=0)

    # ------------------------------------------------------------------
    # 恢复运行
    # ------------------------------------------------------------------

    async def resume_novel(self) -> Dict[str, Any]:
        """
        从持久化状态恢复生成，已完成的章节不会重新生成

        Raises:
            IncompleteStateError: 缺少故事圣经、大纲或标题，应丢弃状态后重新开始
            PipelineError: 继续生成时某个阶段失败
        """
        self.processing_state = ProcessingState()
        self.llm_service.reset_usage()
        self._set_phase("loading", "Loading saved progress...")

        try:
            is_external = await self._load_state()
            if not is_external:
                await self._write_chapters(start_index=len(self.chapters))
            else:
                self.processing_state.complete()
                self._emit_progress()
        except IncompleteStateError as e:
            self.processing_state.fail(str(e))
            self._emit_progress(error=str(e))
            raise
        except Exception as e:
            raise self._fail(e) from e

        return self._build_result(is_external=is_external)

    async def _load_state(self) -> bool:
        """重建内存状态与检索索引，返回是否为外部导入的文稿"""
        store = self.state_store
        self._clear_memory()
        await self.retrieval_index.clear()

        if await store.get(StateKeys.IS_EXTERNAL):
            content = await store.get(StateKeys.NOVEL_CONTENT)
            self.external_content = content if isinstance(content, str) else ""
            self.novel_title = await store.get(StateKeys.NOVEL_TITLE) or ""
            logger.info(f"已加载外部导入的文稿: 《{self.novel_title}》，不继续生成")
            return True

        bible_data = await store.get(StateKeys.STORY_BIBLE)
        outline_data = await store.get(StateKeys.OUTLINE)
        title = await store.get(StateKeys.NOVEL_TITLE)
        saved_chapters = await store.get(StateKeys.CHAPTERS)

        missing = []
        if not isinstance(bible_data, dict):
            missing.append(StateKeys.STORY_BIBLE)
        if not isinstance(outline_data, dict):
            missing.append(StateKeys.OUTLINE)
        if not title or not isinstance(title, str):
            missing.append(StateKeys.NOVEL_TITLE)
        # 章节列表中出现空洞时无法确定续写位置
        if saved_chapters is not None and (
            not isinstance(saved_chapters, list)
            or not all(isinstance(text, str) for text in saved_chapters)
        ):
            missing.append(StateKeys.CHAPTERS)
        if missing:
            raise IncompleteStateError(
                "Could not resume: saved data is incomplete. Please start a new novel.",
                missing_keys=missing,
            )

        self.initial_prompt = await store.get(StateKeys.INITIAL_PROMPT) or ""
        self.story_bible = StoryBible.from_dict(bible_data)
        self.outline = NovelOutline.from_dict(outline_data)
        self.novel_title = title

        self.chapters = [
            ChapterRecord.from_text(number, text)
            for number, text in enumerate(saved_chapters or [], 1)
        ]

        summary = await store.get(StateKeys.CURRENT_SUMMARY)
        phrases = await store.get(StateKeys.FORBIDDEN_PHRASES)
        self.continuity = ContinuityState(
            running_summary=summary if isinstance(summary, str) and summary else self.outline.summary,
            forbidden_phrases=merge_phrases((), phrases if isinstance(phrases, list) else []),
        )

        await self.retrieval_index.upsert(
            STORY_BIBLE_DOC_ID, self.story_bible.to_json(), {"type": "story_bible"}
        )
        for chapter in self.chapters:
            await self.retrieval_index.upsert(
                chapter.document_id, chapter.text, {"type": "chapter", "chapter": chapter.number}
            )

        done = len(self.chapters)
        total = self.outline.chapter_count
        phase = derive_phase(True, True, done, total)
        self.processing_state.resumed_from = done
        logger.info(f"恢复进度: 《{self.novel_title}》 {done}/{total} 章 (阶段: {phase.value})")
        return False

    # ------------------------------------------------------------------
    # 逐章生成
    # ------------------------------------------------------------------

    async def _write_chapters(self, start_index: int) -> None:
        total = self.outline.chapter_count
        state = self.processing_state
        state.total_chapters = total
        state.completed_chapters = min(start_index, total)

        for index in range(start_index, total):
            await self._write_chapter(index, total)

        self._chapter_buffer = ""
        state.complete()
        self._message = "Your novel is complete!"
        logger.info(f"小说生成完成: 《{self.novel_title}》，共 {len(self.chapters)} 章")
        self._emit_progress()

    async def _write_chapter(self, index: int, total: int) -> None:
        """生成第 index 章（从0开始），完成后折叠连续性状态"""
        config = self.generation_config
        chapter = self.outline.chapters[index]
        number = index + 1

        self.processing_state.start_chapter(index)
        self._set_phase("chapter", f"Penning Chapter {number} of {total}: {chapter.chapter_title}")

        # a. 检索上下文；b. 强制带上前一章
        retrieved = await self.retrieval_index.query(chapter.query_text, config.retrieval_top_k)
        previous = await self.retrieval_index.get(f"chapter_{index}") if index > 0 else None

        prompt = chapter_prompt(
            chapter,
            self.story_bible,
            self.continuity.running_summary,
            index,
            retrieved,
            previous_chapter=previous,
            forbidden_phrases=self.continuity.forbidden_phrases,
        )
        self._check_prompt_budget(number, prompt, len(retrieved))

        # d. 流式生成
        self._chapter_buffer = ""
        async for fragment in self.llm_service.generate_stream(
            prompt,
            system_instruction=self.prompts_config.chapter_system,
            temperature=config.temperature_chapter,
            label=f"chapter_{number}",
        ):
            self._chapter_buffer += fragment
            self._emit_progress()

        # e. 定稿、持久化、加入索引
        record = ChapterRecord.finalize(index, chapter.chapter_title, self._chapter_buffer)
        self.chapters.append(record)
        self._chapter_buffer = ""
        await self.state_store.put(StateKeys.CHAPTERS, [c.text for c in self.chapters])
        await self.retrieval_index.upsert(
            record.document_id, record.text, {"type": "chapter", "chapter": number}
        )
        logger.info(f"第 {number}/{total} 章完成: {chapter.chapter_title} ({_safe_token_count(record.text)} tokens)")

        # f/g. 连续性审校
        self._set_phase("continuity", f"Auditing Chapter {number}...")
        result = await self.llm_service.generate_structured(
            summary_prompt(self.continuity.running_summary, record.text),
            CONTINUITY_SCHEMA,
            system_instruction=self.prompts_config.summary_system,
            temperature=config.temperature_summary,
            label=f"continuity_{number}",
        )
        new_phrases = result.get("identifiedAIisms")
        self.continuity = apply_continuity(
            self.continuity,
            result["summary"],
            new_phrases if isinstance(new_phrases, list) else [],
        )
        for key, value in self.continuity.to_dict().items():
            await self.state_store.put(key, value)
        logger.debug(f"禁用短语累计 {len(self.continuity.forbidden_phrases)} 个")

        self.processing_state.finish_chapter()
        self._emit_progress()

    def _check_prompt_budget(self, number: int, prompt: str, retrieved_count: int) -> None:
        """记录提示词长度，超出预算时只告警，编码器不可用时跳过"""
        max_tokens = self.generation_config.model_max_tokens
        try:
            prompt_tokens = count_tokens(prompt)
            over_budget = exceeds_budget(prompt, max_tokens)
        except EncodingError as e:
            logger.debug(f"跳过第 {number} 章提示词token统计: {e}")
            return

        logger.debug(f"第 {number} 章提示词: {prompt_tokens} tokens，检索到 {retrieved_count} 个文档")
        if over_budget:
            logger.warning(f"第 {number} 章提示词过长: {prompt_tokens} tokens (模型上限 {max_tokens})")

    # ------------------------------------------------------------------
    # 进度与错误
    # ------------------------------------------------------------------

    def _set_phase(self, phase: str, message: str) -> None:
        self.processing_state.current_phase = phase
        self._message = message
        logger.info(message)
        self._emit_progress()

    def _fail(self, error: Exception) -> Exception:
        """记录失败并包装为带阶段信息的 PipelineError"""
        if isinstance(error, (ValidationError, PipelineError)):
            return error

        state = self.processing_state
        phase = state.current_phase
        chapter_index = state.current_chapter if phase in ("chapter", "continuity") else None
        label = _PHASE_LABELS.get(phase, phase)
        if chapter_index is not None:
            label = label.format(number=chapter_index + 1)

        message = f"Failed during {label}: {error}"
        state.fail(str(error))
        logger.error(message)
        self._emit_progress(error=message)
        return PipelineError(message, phase=phase, chapter_index=chapter_index)

    def _emit_progress(self, error: Optional[str] = None) -> None:
        """向外部回调当前进度，回调异常不影响主流程"""
        if not self.progress_callback or not self.processing_state:
            return

        state = self.processing_state
        payload: Dict[str, Any] = {
            "phase": state.current_phase,
            "message": self._message,
            "chapter_index": state.current_chapter,
            "completed_chapters": state.completed_chapters,
            "total_chapters": state.total_chapters,
            "progress": state.progress_percentage / 100,
            "manuscript": self.current_manuscript,
        }
        if error is not None:
            payload["last_error"] = error

        try:
            self.progress_callback(payload)
        except Exception:
            logger.debug("Progress callback failed", exc_info=True)

    def _build_result(self, is_external: bool = False) -> Dict[str, Any]:
        state = self.processing_state
        return {
            "success": True,
            "title": self.novel_title,
            "chapter_count": len(self.chapters),
            "manuscript": self.current_manuscript,
            "forbidden_phrases": self.forbidden_phrases,
            "processing_time": state.elapsed_time,
            "token_usage": self.llm_service.token_usage,
            "is_external": is_external,
            "resumed_from": state.resumed_from,
            "summary": state.get_summary(),
        }
