"""
Token计数器模块
使用tiktoken库估算提示词与章节的token数量
"""
import tiktoken
from typing import Optional
import logging

from exceptions import EncodingError

logger = logging.getLogger(__name__)

# 全局编码器实例
_encoder: Optional[tiktoken.Encoding] = None


def get_encoder() -> tiktoken.Encoding:
    """获取编码器实例（单例模式）"""
    global _encoder
    if _encoder is None:
        try:
            _encoder = tiktoken.get_encoding("cl100k_base")
            logger.debug("初始化tiktoken编码器: cl100k_base")
        except Exception as e:
            logger.error(f"初始化编码器失败: {e}")
            raise EncodingError(f"无法初始化token编码器: {str(e)}")
    return _encoder


def count_tokens(text: str) -> int:
    """
    计算文本的token数量

    Args:
        text: 要计算的文本

    Returns:
        int: token数量

    Raises:
        EncodingError: 编码失败
    """
    if not isinstance(text, str):
        raise ValueError("输入必须是字符串")

    if not text:
        return 0

    try:
        encoder = get_encoder()
        return len(encoder.encode(text, disallowed_special=()))
    except EncodingError:
        raise
    except Exception as e:
        logger.error(f"计算token失败: {e}")
        raise EncodingError(f"无法计算token数量: {str(e)}") from e


def exceeds_budget(text: str, max_tokens: int, ratio: float = 0.8) -> bool:
    """判断文本是否超过模型上下文预算的指定比例"""
    return count_tokens(text) > int(max_tokens * ratio)
