"""
检索索引模块
基于词汇重叠的内存文档库，为每一章提供上下文
"""

import logging
import re
from typing import Any, Dict, List, Optional

from models.document import Document

logger = logging.getLogger(__name__)

# 字母数字串（不含下划线）
_TOKEN_PATTERN = re.compile(r"[^\W_]+")


def tokenize(text: str) -> set:
    """将文本切分为小写词集合"""
    if not text:
        return set()
    return {token.lower() for token in _TOKEN_PATTERN.findall(text)}


class RetrievalIndex:
    """内存检索索引

    按 id upsert：重复添加同一 id 时原位替换，保留最初的插入位置。
    """

    def __init__(self):
        self._documents: Dict[str, Document] = {}
        self._tokens: Dict[str, set] = {}

    def __len__(self) -> int:
        return len(self._documents)

    def documents(self) -> List[Document]:
        """按插入顺序返回所有文档的快照"""
        return list(self._documents.values())

    async def upsert(self, doc_id: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> Document:
        """添加或替换文档"""
        document = Document(id=doc_id, text=text, metadata=dict(metadata or {}))
        # dict 赋值已存在的键不会改变其顺序
        self._documents[doc_id] = document
        self._tokens[doc_id] = tokenize(text)
        logger.debug(f"索引文档: {doc_id} (共 {len(self._documents)} 个)")
        return document

    async def get(self, doc_id: str) -> Optional[Document]:
        return self._documents.get(doc_id)

    async def query(self, text: str, top_k: int = 2) -> List[Document]:
        """返回得分最高的至多 top_k 个文档

        得分为文档中出现的不同查询词数量；同分时保持插入顺序。
        查询没有任何词时，返回最近插入的 top_k 个文档。
        """
        if top_k <= 0 or not self._documents:
            return []

        query_tokens = tokenize(text)
        documents = self.documents()
        if not query_tokens:
            return documents[-top_k:]

        scored = [
            (len(query_tokens & self._tokens[doc.id]), doc)
            for doc in documents
        ]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [doc for _, doc in scored[:top_k]]

    async def clear(self) -> None:
        self._documents.clear()
        self._tokens.clear()
