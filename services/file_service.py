"""
文件服务模块
提供导入文稿读取与导出文件写入的封装
"""

import logging
from pathlib import Path
from typing import Any

from config import get_generation_config
from exceptions import EncodingError
from utils import atomic_write_json, atomic_write_text, safe_read_text
from validators import validate_file_path, validate_output_dir

logger = logging.getLogger(__name__)

DEFAULT_ENCODINGS = ("utf-8", "gbk", "gb2312")
IMPORT_EXTENSIONS = [".txt", ".md", ".text"]


class FileService:
    """文件服务类"""

    def __init__(self, encodings: tuple[str, ...] = DEFAULT_ENCODINGS):
        self.generation_config = get_generation_config()
        self.encodings = list(encodings) or list(DEFAULT_ENCODINGS)

    def read_text_file(self, file_path: str | Path) -> tuple[str, str]:
        """
        读取文本文件，按编码列表依次尝试

        Args:
            file_path: 文件路径

        Returns:
            Tuple[str, str]: (文件内容, 实际使用的编码)

        Raises:
            FileValidationError: 路径不安全、文件不存在或扩展名不支持
            EncodingError: 所有编码都失败
        """
        file_path = validate_file_path(
            file_path, allowed_extensions=IMPORT_EXTENSIONS, max_size_mb=100  # 限制100MB
        )

        logger.debug(f"尝试读取文件: {file_path}")

        try:
            content, actual_encoding = safe_read_text(
                file_path,
                encoding=self.encodings[0],
                fallback_encodings=self.encodings[1:],
            )
            logger.info(f"成功读取文件: {file_path}，使用编码: {actual_encoding}")
            return content, actual_encoding
        except UnicodeDecodeError as e:
            raise EncodingError(
                f"无法读取文件 {file_path}，已尝试编码: {', '.join(self.encodings)}"
            ) from e

    def write_text_file(self, file_path: str | Path, content: str, encoding: str = "utf-8") -> None:
        """写入文本文件（原子性操作）"""
        try:
            atomic_write_text(file_path, content, encoding=encoding)
            logger.debug(f"成功写入文件: {file_path}")
        except Exception as e:
            logger.error(f"写入文件失败: {file_path}, 错误: {e}")
            raise

    def write_json_file(
        self, file_path: str | Path, data: dict[str, Any] | list[Any], backup: bool = True
    ) -> None:
        """
        写入JSON文件（原子性操作）

        Args:
            file_path: 文件路径
            data: JSON数据
            backup: 是否备份已存在的同名文件
        """
        try:
            atomic_write_json(file_path, data, backup=backup)
            logger.debug(f"成功写入JSON文件: {file_path}")
        except Exception as e:
            logger.error(f"写入JSON文件失败: {file_path}, 错误: {e}")
            raise

    def ensure_output_directory(self, output_dir: str | Path | None = None) -> Path:
        """确保输出目录存在，默认使用配置中的 OUTPUT_DIR"""
        return validate_output_dir(output_dir or self.generation_config.output_dir)
