"""
测试用的生成服务替身与示例数据
"""
import copy
import json

from services.llm_service import LLMResponse, LLMService

BIBLE = {
    "characters": [
        {"name": "Elias", "description": "A solitary lighthouse keeper"},
        {"name": "Mara", "description": "The postmistress of the harbor town"},
    ],
    "conflict": "Elias must decide whether to prevent the shipwreck the letters foretell",
    "setting": "A storm-battered lighthouse on a northern coast",
    "theme": "Fate against choice",
    "voiceAndStyle": "Third-person limited, lyrical",
    "dialogueStyle": "Sparse and weighted with subtext",
    "conclusion": "Elias writes the final letter himself",
    "originality": "The letters arrive from the keeper's own future",
}


def make_outline(chapter_count=3, title="Letters from Tomorrow"):
    return {
        "title": title,
        "summary": "A keeper receives letters that describe tomorrow.",
        "chapters": [
            {
                "chapter_title": f"Letter {n}",
                "chapter_summary": f"Elias opens letter number {n} at the lighthouse",
            }
            for n in range(1, chapter_count + 1)
        ],
    }


def continuity(summary, phrases):
    return {"summary": summary, "identifiedAIisms": list(phrases)}


class ScriptedLLMService(LLMService):
    """按调用顺序返回预设结果的生成服务

    structured: 结构化调用的结果队列（dict/str/LLMResponse/异常）
    streams: 流式调用的结果队列（片段列表或异常）
    """

    def __init__(self, structured=None, streams=None):
        self.structured_responses = list(structured or [])
        self.stream_responses = list(streams or [])
        self.structured_calls = []
        self.stream_calls = []
        super().__init__()
        self.generation_config.retry_base_delay = 0

    def _init_client(self) -> None:
        self.client = None

    async def _call_api(self, prompt, system_instruction, temperature, response_schema):
        self.structured_calls.append({
            "prompt": prompt,
            "system_instruction": system_instruction,
            "temperature": temperature,
            "schema": response_schema,
        })
        result = self.structured_responses.pop(0)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, LLMResponse):
            return result
        if isinstance(result, str):
            return LLMResponse(content=result)
        return LLMResponse(
            content=json.dumps(result),
            token_usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        )

    async def _stream_api(self, prompt, system_instruction, temperature):
        self.stream_calls.append({
            "prompt": prompt,
            "system_instruction": system_instruction,
            "temperature": temperature,
        })
        result = self.stream_responses.pop(0)
        if isinstance(result, Exception):
            raise result
        for fragment in result:
            yield fragment


def lighthouse_service(chapter_phrases, chapter_count=None, fragments=None):
    """故事圣经 + 大纲 + 每章一次流式生成与一次连续性审校"""
    chapter_count = chapter_count or len(chapter_phrases)
    structured = [copy.deepcopy(BIBLE), make_outline(chapter_count)]
    streams = []
    for n in range(1, chapter_count + 1):
        streams.append(fragments[n - 1] if fragments else [f"Body of chapter {n}. ", "The tide turned."])
        structured.append(continuity(f"Summary after chapter {n}", chapter_phrases[n - 1]))
    return ScriptedLLMService(structured=structured, streams=streams)
