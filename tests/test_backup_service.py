"""
测试备份导出与外部文稿导入
"""
import json

import pytest

from exceptions import EncodingError, FileValidationError, ValidationError
from fakes import BIBLE, make_outline
from services.backup_service import (
    export_manuscript_text,
    export_pipeline_backup,
    import_external_document,
    load_manuscript,
)
from services.file_service import FileService
from services.retrieval_index import RetrievalIndex
from services.state_store import InMemoryStateStore, StateKeys


async def finished_store():
    store = InMemoryStateStore()
    outline = make_outline(2)
    await store.put(StateKeys.INITIAL_PROMPT, "a lighthouse keeper")
    await store.put(StateKeys.STORY_BIBLE, BIBLE)
    await store.put(StateKeys.OUTLINE, outline)
    await store.put(StateKeys.NOVEL_TITLE, outline["title"])
    await store.put(StateKeys.CHAPTERS, ["Chapter 1: Letter 1\n\nOne\n\n", "Chapter 2: Letter 2\n\nTwo\n\n"])
    await store.put(StateKeys.FORBIDDEN_PHRASES, ["a testament to"])
    return store


class TestExportPipelineBackup:
    """测试流水线备份导出"""

    @pytest.mark.asyncio
    async def test_backup_file_contents(self, tmp_path):
        store = await finished_store()

        path = await export_pipeline_backup(store, output_dir=tmp_path)

        assert path.name == "letters_from_tomorrow_pipeline_backup.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data == {
            "title": "Letters from Tomorrow",
            "initialPrompt": "a lighthouse keeper",
            "storyBible": BIBLE,
            "novelOutline": make_outline(2),
            "forbiddenPhrases": ["a testament to"],
            "novelManuscript": "Chapter 1: Letter 1\n\nOne\n\nChapter 2: Letter 2\n\nTwo\n\n",
        }

    @pytest.mark.asyncio
    async def test_backup_defaults_to_configured_output_dir(self, tmp_path):
        path = await export_pipeline_backup(await finished_store())
        assert path.parent == tmp_path / "outputs"
        assert path.exists()

    @pytest.mark.asyncio
    async def test_empty_store_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            await export_pipeline_backup(InMemoryStateStore(), output_dir=tmp_path)
        assert list(tmp_path.iterdir()) == []


class TestExportManuscriptText:
    """测试纯文本稿件导出"""

    @pytest.mark.asyncio
    async def test_title_on_first_line(self, tmp_path):
        path = await export_manuscript_text(await finished_store(), output_dir=tmp_path)

        assert path.name == "letters_from_tomorrow_manuscript.txt"
        text = path.read_text(encoding="utf-8")
        assert text.startswith("Letters from Tomorrow\n\nChapter 1: Letter 1")

    @pytest.mark.asyncio
    async def test_requires_content(self, tmp_path):
        store = InMemoryStateStore()
        await store.put(StateKeys.NOVEL_TITLE, "Untitled")
        with pytest.raises(ValidationError):
            await export_manuscript_text(store, output_dir=tmp_path)


class TestImportExternalDocument:
    """测试外部文稿导入"""

    @pytest.mark.asyncio
    async def test_import_replaces_state(self, tmp_path):
        store = await finished_store()
        index = RetrievalIndex()
        await index.upsert("chapter_1", "old", {"type": "chapter", "chapter": 1})
        source = tmp_path / "harbor_tales.txt"
        source.write_text("Once, in the harbor...", encoding="utf-8")

        summary = await import_external_document(store, index, source)

        assert summary == {"title": "harbor_tales", "characters": 22, "encoding": "utf-8"}
        assert await store.get(StateKeys.IS_EXTERNAL) is True
        assert await store.get(StateKeys.NOVEL_CONTENT) == "Once, in the harbor..."
        assert await store.get(StateKeys.NOVEL_TITLE) == "harbor_tales"
        assert await store.get(StateKeys.OUTLINE) is None
        assert len(index) == 0
        assert await load_manuscript(store) == "Once, in the harbor..."

    @pytest.mark.asyncio
    async def test_explicit_title(self, tmp_path):
        source = tmp_path / "draft.md"
        source.write_text("# Draft", encoding="utf-8")
        summary = await import_external_document(
            InMemoryStateStore(), RetrievalIndex(), source, title="  The Draft  "
        )
        assert summary["title"] == "The Draft"

    @pytest.mark.asyncio
    async def test_gbk_fallback(self, tmp_path):
        source = tmp_path / "novel.txt"
        source.write_bytes("灯塔守护者".encode("gbk"))
        summary = await import_external_document(InMemoryStateStore(), RetrievalIndex(), source)
        assert summary["encoding"] in ("gbk", "gb2312")

    @pytest.mark.asyncio
    async def test_empty_document_leaves_state_untouched(self, tmp_path):
        store = await finished_store()
        source = tmp_path / "empty.txt"
        source.write_text("  \n", encoding="utf-8")

        with pytest.raises(ValidationError):
            await import_external_document(store, RetrievalIndex(), source)

        assert await store.get(StateKeys.NOVEL_TITLE) == "Letters from Tomorrow"

    @pytest.mark.asyncio
    async def test_unsupported_extension(self, tmp_path):
        source = tmp_path / "novel.pdf"
        source.write_bytes(b"%PDF")
        with pytest.raises(FileValidationError):
            await import_external_document(InMemoryStateStore(), RetrievalIndex(), source)

    @pytest.mark.asyncio
    async def test_undecodable_file(self, tmp_path):
        source = tmp_path / "binary.txt"
        source.write_bytes(b"\xff\xfe\xfa\x80")

        with pytest.raises(EncodingError):
            await import_external_document(
                InMemoryStateStore(), RetrievalIndex(), source,
                file_service=FileService(encodings=("utf-8", "ascii")),
            )
