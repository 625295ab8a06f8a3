"""小说生成服务（流水线编排）测试"""

import copy
from unittest.mock import MagicMock

import pytest

from exceptions import PipelineError, ServerError, TransportError, ValidationError
from fakes import BIBLE, ScriptedLLMService, continuity, lighthouse_service, make_outline
from prompts import CONTINUITY_SCHEMA, OUTLINE_SCHEMA, STORY_BIBLE_SCHEMA
from services.novel_generation_service import NovelGenerationService
from services.retrieval_index import RetrievalIndex
from services.state_store import InMemoryStateStore, StateKeys

PROMPT = "a lighthouse keeper who receives letters from the future"


def make_service(llm, store=None, callback=None):
    return NovelGenerationService(
        llm_service=llm,
        state_store=store or InMemoryStateStore(),
        retrieval_index=RetrievalIndex(),
        progress_callback=callback,
    )


@pytest.mark.asyncio
async def test_lighthouse_three_chapters():
    llm = lighthouse_service([
        ["a testament to", "the air was thick"],
        ["the air was thick", "couldn't help but"],
        ["sent shivers"],
    ])
    seen_phrases = {}

    def on_progress(payload):
        if payload["message"].startswith("Penning"):
            seen_phrases.setdefault(payload["chapter_index"], list(service.forbidden_phrases))

    service = make_service(llm, callback=on_progress)
    result = await service.generate_novel(PROMPT, page_count=10)

    assert result["success"] is True
    assert result["title"] == "Letters from Tomorrow"
    assert result["chapter_count"] == 3
    assert len(llm.stream_calls) == 3

    expected_chapters = [
        f"Chapter {n}: Letter {n}\n\nBody of chapter {n}. The tide turned.\n\n" for n in (1, 2, 3)
    ]
    assert [c.text for c in service.chapters] == expected_chapters
    assert result["manuscript"] == "".join(expected_chapters)

    # 第二章开始前只包含第一章的短语，第三章开始前为前两章的去重并集
    assert seen_phrases[0] == []
    assert seen_phrases[1] == ["a testament to", "the air was thick"]
    assert seen_phrases[2] == ["a testament to", "the air was thick", "couldn't help but"]
    assert result["forbidden_phrases"] == [
        "a testament to", "the air was thick", "couldn't help but", "sent shivers",
    ]


@pytest.mark.asyncio
async def test_fresh_run_persists_every_key():
    llm = lighthouse_service([["p1"], ["p2"]])
    store = InMemoryStateStore()
    service = make_service(llm, store=store)

    await service.generate_novel(PROMPT, page_count=4)

    assert await store.get(StateKeys.INITIAL_PROMPT) == PROMPT
    assert await store.get(StateKeys.STORY_BIBLE) == BIBLE
    assert await store.get(StateKeys.OUTLINE) == make_outline(2)
    assert await store.get(StateKeys.NOVEL_TITLE) == "Letters from Tomorrow"
    assert await store.get(StateKeys.PAGE_COUNT) == 4
    assert len(await store.get(StateKeys.CHAPTERS)) == 2
    assert await store.get(StateKeys.CURRENT_SUMMARY) == "Summary after chapter 2"
    assert await store.get(StateKeys.FORBIDDEN_PHRASES) == ["p1", "p2"]


@pytest.mark.asyncio
async def test_request_modes_schemas_and_temperatures():
    llm = lighthouse_service([["p1"]])
    service = make_service(llm)

    await service.generate_novel(PROMPT, page_count=10)

    bible_call, outline_call, audit_call = llm.structured_calls
    assert bible_call["schema"] is STORY_BIBLE_SCHEMA
    assert bible_call["temperature"] == 0.8
    assert PROMPT in bible_call["prompt"]

    assert outline_call["schema"] is OUTLINE_SCHEMA
    assert outline_call["temperature"] == 0.8
    assert "approximately 2500 words" in outline_call["prompt"]
    assert "Third-person limited, lyrical" in outline_call["prompt"]

    assert audit_call["schema"] is CONTINUITY_SCHEMA
    assert audit_call["temperature"] == 0.5
    assert audit_call["system_instruction"] == service.prompts_config.summary_system
    assert "Chapter 1: Letter 1" in audit_call["prompt"]

    stream_call = llm.stream_calls[0]
    assert stream_call["temperature"] == 0.75
    assert stream_call["system_instruction"] == service.prompts_config.chapter_system


@pytest.mark.asyncio
async def test_chapter_prompt_context():
    llm = lighthouse_service([["overused line"], []])
    service = make_service(llm)

    await service.generate_novel(PROMPT)

    first, second = (call["prompt"] for call in llm.stream_calls)
    # 第一章：初始摘要即大纲摘要，检索到故事圣经
    assert "A keeper receives letters that describe tomorrow." in first
    assert "--- CONTEXT from story_bible ---" in first
    assert "Immediately Preceding Chapter" not in first
    assert "FORBIDDEN PHRASES" not in first

    # 第二章：带上前一章全文、更新后的摘要与禁用短语
    assert "--- CONTEXT: Immediately Preceding Chapter (Chapter 1) ---" in second
    assert "Chapter 1: Letter 1\n\nBody of chapter 1." in second
    assert "Summary after chapter 1" in second
    assert "overused line" in second


@pytest.mark.asyncio
async def test_no_page_count_means_no_length_instruction():
    llm = lighthouse_service([[]])
    await make_service(llm).generate_novel(PROMPT)
    assert "target length" not in llm.structured_calls[1]["prompt"]


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "   ", None])
async def test_empty_prompt_rejected_before_any_mutation(prompt):
    llm = ScriptedLLMService()
    store = InMemoryStateStore()
    await store.put(StateKeys.OUTLINE, {"title": "earlier run"})
    service = make_service(llm, store=store)

    with pytest.raises(ValidationError):
        await service.generate_novel(prompt)

    assert await store.get(StateKeys.OUTLINE) == {"title": "earlier run"}
    assert llm.structured_calls == []


@pytest.mark.asyncio
async def test_fresh_run_clears_previous_state():
    store = InMemoryStateStore()
    await store.put(StateKeys.IS_EXTERNAL, True)
    await store.put(StateKeys.NOVEL_CONTENT, "imported text")
    await store.put("staleKey", "from an unrelated run")
    index = RetrievalIndex()
    await index.upsert("chapter_9", "stale chapter", {"type": "chapter", "chapter": 9})

    llm = lighthouse_service([[]])
    service = NovelGenerationService(llm_service=llm, state_store=store, retrieval_index=index)
    await service.generate_novel(PROMPT)

    assert await store.get(StateKeys.IS_EXTERNAL) is None
    assert await store.get(StateKeys.NOVEL_CONTENT) is None
    assert await store.get("staleKey") is None
    assert await index.get("chapter_9") is None
    assert [d.id for d in index.documents()] == ["story_bible", "chapter_1"]


@pytest.mark.asyncio
async def test_chapter_failure_keeps_earlier_progress():
    llm = ScriptedLLMService(
        structured=[
            copy.deepcopy(BIBLE),
            make_outline(3),
            continuity("Summary after chapter 1", ["p1"]),
        ],
        streams=[["chapter one"], TransportError("connection dropped")],
    )
    store = InMemoryStateStore()
    errors = []
    service = make_service(llm, store=store, callback=lambda p: p.get("last_error") and errors.append(p))

    with pytest.raises(PipelineError) as exc_info:
        await service.generate_novel(PROMPT)

    error = exc_info.value
    assert error.phase == "chapter"
    assert error.chapter_index == 1
    assert error.chapter_number == 2
    assert "Chapter 2 generation" in error.message
    assert isinstance(error.__cause__, TransportError)
    assert errors and "connection dropped" in errors[-1]["last_error"]

    assert await store.get(StateKeys.CHAPTERS) == ["Chapter 1: Letter 1\n\nchapter one\n\n"]
    assert await store.get(StateKeys.CURRENT_SUMMARY) == "Summary after chapter 1"
    assert await store.get(StateKeys.FORBIDDEN_PHRASES) == ["p1"]


@pytest.mark.asyncio
async def test_story_bible_failure_after_retries():
    llm = ScriptedLLMService(structured=[
        ServerError("overloaded", status_code=503),
        ServerError("overloaded", status_code=503),
        ServerError("still overloaded", status_code=503),
    ])
    service = make_service(llm)

    with pytest.raises(PipelineError) as exc_info:
        await service.generate_novel(PROMPT)

    assert exc_info.value.phase == "story_bible"
    assert exc_info.value.chapter_index is None
    assert len(llm.structured_calls) == 3
    assert service.processing_state.current_phase == "failed"


@pytest.mark.asyncio
async def test_continuity_schema_mismatch_fails_audit_phase():
    llm = ScriptedLLMService(
        structured=[copy.deepcopy(BIBLE), make_outline(1), '{"summary": "no phrases key"}'],
        streams=[["body"]],
    )
    store = InMemoryStateStore()
    service = make_service(llm, store=store)

    with pytest.raises(PipelineError) as exc_info:
        await service.generate_novel(PROMPT)

    assert exc_info.value.phase == "continuity"
    assert exc_info.value.chapter_number == 1
    # 章节已持久化，审校结果未写入
    assert len(await store.get(StateKeys.CHAPTERS)) == 1
    assert await store.get(StateKeys.CURRENT_SUMMARY) == make_outline(1)["summary"]


@pytest.mark.asyncio
async def test_live_manuscript_grows_with_each_fragment():
    llm = lighthouse_service([[], []], fragments=[["Al", "pha"], ["Be", "ta"]])
    manuscripts = []

    def on_progress(payload):
        if payload["phase"] == "chapter":
            manuscripts.append(payload["manuscript"])

    service = make_service(llm, callback=on_progress)
    await service.generate_novel(PROMPT)

    assert "Al" in manuscripts
    assert "Alpha" in manuscripts
    chapter_one = "Chapter 1: Letter 1\n\nAlpha\n\n"
    assert chapter_one + "Be" in manuscripts
    assert chapter_one + "Beta" in manuscripts
    # 消费者观察到的稿件长度单调不减
    lengths = [len(m) for m in manuscripts]
    assert lengths == sorted(lengths)


@pytest.mark.asyncio
async def test_progress_callback_errors_do_not_interrupt():
    callback = MagicMock(side_effect=RuntimeError("ui went away"))
    service = make_service(lighthouse_service([[]]), callback=callback)

    result = await service.generate_novel(PROMPT)

    assert result["chapter_count"] == 1
    assert callback.called


@pytest.mark.asyncio
async def test_progress_messages():
    messages = []
    service = make_service(
        lighthouse_service([[], []]),
        callback=lambda p: messages.append(p["message"]) if p["message"] not in messages else None,
    )

    await service.generate_novel(PROMPT)

    assert "Building the world: Creating the Story Bible..." in messages
    assert "Drafting the Outline..." in messages
    assert "Penning Chapter 1 of 2: Letter 1" in messages
    assert "Auditing Chapter 2..." in messages
    assert messages[-1] == "Your novel is complete!"


@pytest.mark.asyncio
async def test_token_usage_reported():
    service = make_service(lighthouse_service([[]]))
    result = await service.generate_novel(PROMPT)
    # 故事圣经、大纲与一次审校，各 15 tokens
    assert result["token_usage"]["total_tokens"] == 45


@pytest.mark.asyncio
async def test_reset_discards_everything():
    store = InMemoryStateStore()
    service = make_service(lighthouse_service([[]]), store=store)
    await service.generate_novel(PROMPT)

    await service.reset()

    assert await store.keys() == []
    assert len(service.retrieval_index) == 0
    assert service.current_manuscript == ""
    assert await service.has_saved_state() is False


@pytest.mark.asyncio
async def test_run_completes_without_token_encoder(monkeypatch):
    """编码器不可用时只跳过token统计，不影响生成"""
    import tiktoken
    import tokenizer

    def unavailable(name):
        raise OSError("cannot download cl100k_base")

    monkeypatch.setattr(tokenizer, "_encoder", None)
    monkeypatch.setattr(tiktoken, "get_encoding", unavailable)
    llm = lighthouse_service([["a testament to"], [], ["sent shivers"]])
    store = InMemoryStateStore()

    result = await make_service(llm, store=store).generate_novel(PROMPT)

    assert result["success"] is True
    assert result["chapter_count"] == 3
    assert len(llm.structured_calls) == 5
    assert await store.get(StateKeys.FORBIDDEN_PHRASES) == ["a testament to", "sent shivers"]


@pytest.mark.asyncio
async def test_null_continuity_summary_is_not_persisted():
    llm = ScriptedLLMService(
        structured=[copy.deepcopy(BIBLE), make_outline(2), continuity(None, [])],
        streams=[["body"]],
    )
    store = InMemoryStateStore()
    service = make_service(llm, store=store)

    with pytest.raises(PipelineError) as exc_info:
        await service.generate_novel(PROMPT)

    assert exc_info.value.phase == "continuity"
    assert exc_info.value.chapter_number == 1
    assert await store.get(StateKeys.CURRENT_SUMMARY) == make_outline(2)["summary"]
    assert len(llm.stream_calls) == 1
