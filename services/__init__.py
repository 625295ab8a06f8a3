"""
服务层模块
包含各种业务逻辑服务
"""

from .file_service import FileService
from .llm_service import GeminiService, LLMService, OpenAIService, create_llm_service
from .novel_generation_service import NovelGenerationService
from .retrieval_index import RetrievalIndex
from .state_store import InMemoryStateStore, JsonFileStateStore, StateKeys, StateStore

__all__ = [
    "LLMService",
    "OpenAIService",
    "GeminiService",
    "create_llm_service",
    "FileService",
    "NovelGenerationService",
    "RetrievalIndex",
    "StateStore",
    "StateKeys",
    "JsonFileStateStore",
    "InMemoryStateStore",
]
