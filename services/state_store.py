"""
持久化状态存储模块
按键保存流水线状态，进程重启后可据此恢复生成
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from exceptions import StorageError
from utils import atomic_write_json, safe_read_json

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class StateKeys:
    """持久化键名"""

    INITIAL_PROMPT = "initialPrompt"
    STORY_BIBLE = "storyBible"
    OUTLINE = "outline"
    NOVEL_TITLE = "novelTitle"
    CHAPTERS = "chapters"
    CURRENT_SUMMARY = "currentSummary"
    FORBIDDEN_PHRASES = "forbiddenPhrases"
    IS_EXTERNAL = "isExternal"
    NOVEL_CONTENT = "novelContent"
    PAGE_COUNT = "pageCount"


def validate_key(key: str) -> str:
    """键只允许字母、数字、下划线和连字符"""
    if not isinstance(key, str) or not _KEY_PATTERN.match(key):
        raise StorageError(f"非法的状态键: {key!r}", key=key if isinstance(key, str) else None)
    return key


class StateStore(ABC):
    """异步键值存储接口，值按原样保存和返回，不做解释"""

    @abstractmethod
    async def get(self, key: str) -> Any:
        """读取键值，不存在时返回 None"""

    @abstractmethod
    async def put(self, key: str, value: Any) -> None:
        """写入键值"""

    @abstractmethod
    async def clear(self) -> None:
        """删除所有键（包括之前任何运行写入的键）"""

    @abstractmethod
    async def keys(self) -> list[str]:
        """当前存在的所有键"""


class InMemoryStateStore(StateStore):
    """内存存储，进程退出即丢失"""

    def __init__(self):
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any:
        return self._data.get(validate_key(key))

    async def put(self, key: str, value: Any) -> None:
        self._data[validate_key(key)] = value

    async def clear(self) -> None:
        self._data.clear()

    async def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStateStore(StateStore):
    """每个键一个JSON文件的本地存储

    写入通过临时文件 + 原子替换完成，文件IO放在线程池中执行，不阻塞事件循环。
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)

    def _path(self, key: str) -> Path:
        return self.state_dir / f"{validate_key(key)}.json"

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _read(self, key: str) -> Any:
        record = safe_read_json(self._path(key), default=None)
        if record is None:
            return None
        if not isinstance(record, dict) or "value" not in record:
            logger.warning(f"状态文件格式无效，按不存在处理: {key}")
            return None
        return record["value"]

    def _write(self, key: str, value: Any) -> None:
        atomic_write_json(self._path(key), {"key": key, "value": value})

    def _clear(self) -> int:
        if not self.state_dir.exists():
            return 0
        removed = 0
        for state_file in self.state_dir.glob("*.json"):
            state_file.unlink()
            removed += 1
        return removed

    async def get(self, key: str) -> Any:
        path = self._path(key)
        try:
            return await self._run(self._read, key)
        except Exception as e:
            # 读取失败降级为"不存在"，由调用方决定是否必需
            logger.error(f"读取状态失败: {path}, 错误: {e}")
            return None

    async def put(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            await self._run(self._write, key, value)
        except Exception as e:
            logger.error(f"写入状态失败: {path}, 错误: {e}")
            raise StorageError(f"写入状态失败: {key}: {e}", key=key) from e
        logger.debug(f"已保存状态: {key}")

    async def clear(self) -> None:
        try:
            removed = await self._run(self._clear)
        except Exception as e:
            logger.error(f"清空状态目录失败: {self.state_dir}, 错误: {e}")
            raise StorageError(f"清空状态失败: {e}") from e
        logger.info(f"已清空持久化状态 ({removed} 个键)")

    async def keys(self) -> list[str]:
        if not self.state_dir.exists():
            return []
        return sorted(p.stem for p in self.state_dir.glob("*.json"))


async def has_saved_state(store: StateStore) -> bool:
    """是否存在可恢复的运行（已生成大纲或导入了外部文稿）"""
    for key in (StateKeys.OUTLINE, StateKeys.NOVEL_CONTENT, StateKeys.IS_EXTERNAL):
        if await store.get(key):
            return True
    return False
