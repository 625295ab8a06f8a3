"""
输入验证模块
提供各种输入验证功能，确保安全性
"""

import os
from pathlib import Path

from config import SUPPORTED_API_PROVIDERS
from exceptions import ConfigurationError, FileValidationError, ValidationError


def validate_prompt(prompt: str | None) -> str:
    """验证创作提示不为空

    Args:
        prompt: 用户输入的小说创意

    Returns:
        str: 去除首尾空白后的提示

    Raises:
        ValidationError: 提示为空
    """
    if prompt is None or not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("Please enter a prompt for your novel.")
    return prompt.strip()


def validate_page_count(value: int | str | None) -> int:
    """解析目标页数

    无法解析的值按0处理（不附加篇幅要求），负数视为输入错误。

    Args:
        value: 页数，可以是整数或字符串

    Returns:
        int: 页数，0 表示不限制篇幅
    """
    if value is None or value == "":
        return 0

    try:
        page_count = int(str(value).strip())
    except ValueError:
        return 0

    if page_count < 0:
        raise ValidationError(f"页数不能为负数，当前值: {value}")

    return page_count


def validate_file_path(
    file_path: str | Path,
    allowed_extensions: list | None = None,
    max_size_mb: int | None = None,
) -> Path:
    """验证文件路径的安全性

    Args:
        file_path: 文件路径
        allowed_extensions: 允许的文件扩展名列表，如['.txt', '.md']
        max_size_mb: 最大文件大小（MB）

    Returns:
        Path: 验证后的Path对象

    Raises:
        FileValidationError: 文件验证失败
    """
    if isinstance(file_path, Path):
        file_path = str(file_path)

    if not file_path or not isinstance(file_path, str):
        raise FileValidationError("文件路径不能为空")

    # 检查路径遍历攻击
    normalized_path = os.path.normpath(file_path)
    if ".." in normalized_path.split(os.sep):
        raise FileValidationError("检测到不安全的路径遍历")

    path_obj = Path(file_path)

    if not path_obj.exists():
        raise FileValidationError(f"文件不存在: {file_path}")

    if not path_obj.is_file():
        raise FileValidationError(f"路径不是文件: {file_path}")

    if allowed_extensions:
        ext = path_obj.suffix.lower()
        if ext not in allowed_extensions:
            raise FileValidationError(
                f"不支持的文件扩展名: {ext}. 支持的扩展名: {', '.join(allowed_extensions)}"
            )

    if max_size_mb is not None:
        size_mb = path_obj.stat().st_size / (1024 * 1024)
        if size_mb > max_size_mb:
            raise FileValidationError(f"文件过大: {size_mb:.2f}MB. 最大允许: {max_size_mb}MB")

    return path_obj


def validate_output_dir(output_dir: str | Path) -> Path:
    """验证并创建输出目录

    Args:
        output_dir: 输出目录路径

    Returns:
        Path: 验证后的Path对象
    """
    if isinstance(output_dir, Path):
        output_dir = str(output_dir)

    if not output_dir or not isinstance(output_dir, str):
        raise FileValidationError("输出目录路径不能为空")

    normalized_path = os.path.normpath(output_dir)
    if ".." in normalized_path.split(os.sep):
        raise FileValidationError("检测到不安全的路径遍历")

    path_obj = Path(output_dir)

    try:
        path_obj.mkdir(parents=True, exist_ok=True)
    except PermissionError as e:
        raise FileValidationError(f"没有权限创建目录: {output_dir}") from e
    except Exception as e:
        raise FileValidationError(f"创建目录失败: {output_dir}, 错误: {str(e)}") from e

    return path_obj


def validate_api_provider(provider: str) -> str:
    """验证API提供商

    Args:
        provider: API提供商名称

    Returns:
        str: 验证后的提供商名称
    """
    if not provider or not isinstance(provider, str):
        raise ConfigurationError("API提供商不能为空")

    provider = provider.lower()
    if provider not in SUPPORTED_API_PROVIDERS:
        raise ConfigurationError(
            f"不支持的API提供商: {provider}. 支持的提供商: {', '.join(SUPPORTED_API_PROVIDERS)}"
        )

    return provider
