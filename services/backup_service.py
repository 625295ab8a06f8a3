"""
备份与导入服务模块
导出流水线备份/纯文本稿件，导入外部文稿
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from exceptions import ValidationError
from services.file_service import FileService
from services.retrieval_index import RetrievalIndex
from services.state_store import StateKeys, StateStore
from utils import get_safe_filename

logger = logging.getLogger(__name__)


async def load_manuscript(store: StateStore) -> str:
    """读取完整稿件：优先使用导入的文稿，否则拼接已完成的章节"""
    content = await store.get(StateKeys.NOVEL_CONTENT)
    if isinstance(content, str) and content:
        return content
    chapters = await store.get(StateKeys.CHAPTERS)
    if isinstance(chapters, list):
        return "".join(chapter for chapter in chapters if isinstance(chapter, str))
    return ""


async def export_pipeline_backup(store: StateStore,
                                 output_dir: Optional[str | Path] = None,
                                 file_service: Optional[FileService] = None) -> Path:
    """
    导出流水线备份（JSON），包含提示、故事圣经、大纲、禁用短语与稿件

    Returns:
        Path: 备份文件路径

    Raises:
        ValidationError: 没有可备份的内容
    """
    title = await store.get(StateKeys.NOVEL_TITLE) or ""
    outline = await store.get(StateKeys.OUTLINE)
    manuscript = await load_manuscript(store)
    if not title and not outline and not manuscript:
        raise ValidationError("No novel data to back up.")

    backup: Dict[str, Any] = {
        "title": title,
        "initialPrompt": await store.get(StateKeys.INITIAL_PROMPT) or "",
        "storyBible": await store.get(StateKeys.STORY_BIBLE),
        "novelOutline": outline,
        "forbiddenPhrases": await store.get(StateKeys.FORBIDDEN_PHRASES) or [],
        "novelManuscript": manuscript,
    }

    file_service = file_service or FileService()
    directory = file_service.ensure_output_directory(output_dir)
    backup_path = directory / get_safe_filename(title, "pipeline_backup.json")
    file_service.write_json_file(backup_path, backup, backup=False)
    logger.info(f"流水线备份已导出: {backup_path}")
    return backup_path


async def export_manuscript_text(store: StateStore,
                                 output_dir: Optional[str | Path] = None,
                                 file_service: Optional[FileService] = None) -> Path:
    """导出纯文本稿件，标题置于首行"""
    title = await store.get(StateKeys.NOVEL_TITLE) or ""
    manuscript = await load_manuscript(store)
    if not title or not manuscript:
        raise ValidationError("Cannot export: the novel has no title or content yet.")

    file_service = file_service or FileService()
    directory = file_service.ensure_output_directory(output_dir)
    text_path = directory / get_safe_filename(title, "manuscript.txt")
    file_service.write_text_file(text_path, f"{title}\n\n{manuscript}")
    logger.info(f"稿件已导出: {text_path}")
    return text_path


async def import_external_document(store: StateStore,
                                   index: RetrievalIndex,
                                   file_path: str | Path,
                                   title: Optional[str] = None,
                                   file_service: Optional[FileService] = None) -> Dict[str, Any]:
    """
    导入外部文稿，替换当前全部状态；导入的文稿不会继续生成

    Args:
        store: 状态存储
        index: 检索索引（一并清空）
        file_path: .txt/.md 文件路径
        title: 标题，默认使用文件名

    Returns:
        Dict[str, Any]: 导入摘要
    """
    file_service = file_service or FileService()
    content, encoding = file_service.read_text_file(file_path)
    if not content.strip():
        raise ValidationError("The imported document is empty.")

    title = (title or "").strip() or Path(file_path).stem

    await store.clear()
    await index.clear()
    await store.put(StateKeys.IS_EXTERNAL, True)
    await store.put(StateKeys.NOVEL_TITLE, title)
    await store.put(StateKeys.NOVEL_CONTENT, content)

    logger.info(f"已导入外部文稿: 《{title}》 ({len(content)} 字符, 编码 {encoding})")
    return {"title": title, "characters": len(content), "encoding": encoding}
