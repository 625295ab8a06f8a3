"""
通用工具模块
包含日志配置、原子文件操作、JSON处理等实用功能
"""
import os
import re
import json
import tempfile
import shutil
from pathlib import Path
from typing import Any, Optional, Union, List, Tuple
import logging
from datetime import datetime

# 日志配置函数
_logging_configured = False


def setup_logging(level=None, log_file='novel_generator.log'):
    """统一配置日志系统，避免重复配置

    Args:
        level: 日志级别，默认从环境变量 LOG_LEVEL 读取，若未设置则使用 INFO
        log_file: 日志文件路径
    """
    global _logging_configured
    if _logging_configured:
        return

    # 支持通过环境变量控制日志级别
    if level is None:
        level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
        level = getattr(logging, level_str, logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler()
        ],
        force=True  # 强制重新配置，即使已经配置过
    )
    _logging_configured = True


logger = logging.getLogger(__name__)


def _write_atomically(file_path: Path, write, encoding: str) -> None:
    """写入临时文件后原子性重命名到目标路径"""
    file_path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(
        suffix='.tmp',
        prefix=file_path.name + '_',
        dir=file_path.parent
    )

    try:
        with os.fdopen(temp_fd, 'w', encoding=encoding) as f:
            write(f)
            f.flush()
            os.fsync(f.fileno())  # 强制写入磁盘

        os.replace(temp_path, file_path)
        logger.debug(f"原子性写入成功: {file_path}")

    except Exception as e:
        try:
            os.unlink(temp_path)
        except (OSError, FileNotFoundError):
            pass
        logger.error(f"写入文件失败: {file_path}, 错误: {e}")
        raise


def _backup_existing(file_path: Path) -> None:
    """为已存在的文件创建带时间戳的备份"""
    if not file_path.exists():
        return
    backup_path = file_path.with_suffix(f'.{datetime.now().strftime("%Y%m%d_%H%M%S")}.bak')
    try:
        shutil.copy2(file_path, backup_path)
        logger.debug(f"创建备份文件: {backup_path}")
    except Exception as e:
        logger.warning(f"创建备份文件失败: {e}")


def atomic_write_json(file_path: Union[str, Path],
                      data: Any,
                      backup: bool = False,
                      indent: int = 2) -> None:
    """原子性写入JSON文件

    Args:
        file_path: 目标文件路径
        data: 要写入的数据（任意可JSON序列化的值）
        backup: 是否创建备份文件
        indent: JSON缩进

    Raises:
        OSError: 文件操作失败
        TypeError: 数据无法序列化为JSON
    """
    file_path = Path(file_path)
    if backup:
        _backup_existing(file_path)
    _write_atomically(
        file_path,
        lambda f: json.dump(data, f, ensure_ascii=False, indent=indent),
        'utf-8',
    )


def atomic_write_text(file_path: Union[str, Path],
                      content: str,
                      backup: bool = False,
                      encoding: str = 'utf-8') -> None:
    """原子性写入文本文件

    Args:
        file_path: 目标文件路径
        content: 文件内容
        backup: 是否创建备份文件
        encoding: 文件编码
    """
    file_path = Path(file_path)
    if backup:
        _backup_existing(file_path)
    _write_atomically(file_path, lambda f: f.write(content), encoding)


def safe_read_json(file_path: Union[str, Path],
                   default: Any = None,
                   backup_on_corruption: bool = True) -> Any:
    """安全读取JSON文件

    Args:
        file_path: 文件路径
        default: 默认值（如果文件不存在或读取失败）
        backup_on_corruption: 是否在文件损坏时创建备份

    Returns:
        解析后的JSON数据，失败时返回 default
    """
    file_path = Path(file_path)

    if not file_path.exists():
        return default

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)

    except json.JSONDecodeError as e:
        logger.error(f"JSON文件损坏: {file_path}, 错误: {e}")

        if backup_on_corruption:
            backup_path = file_path.with_suffix(f'.corrupt_{datetime.now().strftime("%Y%m%d_%H%M%S")}')
            try:
                shutil.copy2(file_path, backup_path)
                logger.info(f"损坏的文件已备份: {backup_path}")
            except Exception as backup_error:
                logger.warning(f"备份损坏文件失败: {backup_error}")

        return default

    except Exception as e:
        logger.error(f"读取文件失败: {file_path}, 错误: {e}")
        return default


def safe_read_text(file_path: Union[str, Path],
                   encoding: str = 'utf-8',
                   fallback_encodings: Optional[List[str]] = None) -> Tuple[str, str]:
    """安全读取文本文件，支持多种编码

    Args:
        file_path: 文件路径
        encoding: 首选编码
        fallback_encodings: 备选编码列表

    Returns:
        Tuple[str, str]: (文件内容, 实际使用的编码)
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"文件不存在: {file_path}")

    encodings = [encoding]
    if fallback_encodings:
        encodings.extend(fallback_encodings)

    last_error = None
    for enc in encodings:
        try:
            with open(file_path, 'r', encoding=enc) as f:
                content = f.read()
            logger.debug(f"成功读取文件 {file_path}，使用编码: {enc}")
            return content, enc
        except UnicodeDecodeError as e:
            last_error = e
            logger.debug(f"编码 {enc} 失败: {e}")
            continue
        except Exception as e:
            logger.error(f"读取文件失败: {file_path}, 编码: {enc}, 错误: {e}")
            raise

    # 所有编码都失败
    raise UnicodeDecodeError(
        last_error.encoding if last_error else 'unknown',
        last_error.object if last_error else b'',
        last_error.start if last_error else 0,
        last_error.end if last_error else 1,
        f"无法使用任何编码读取文件: {', '.join(encodings)}"
    )


def format_file_size(size_bytes: int) -> str:
    """格式化文件大小"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.1f}{unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f}PB"


def truncate_text(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """截断文本

    Args:
        text: 原始文本
        max_length: 最大长度
        suffix: 截断后的后缀

    Returns:
        str: 截断后的文本
    """
    if len(text) <= max_length:
        return text
    return text[:max_length-len(suffix)] + suffix


def get_safe_filename(title: Optional[str], suffix: str) -> str:
    """由标题生成安全的文件名：非字母数字替换为下划线并转为小写"""
    safe_title = re.sub(r'[^a-z0-9]', '_', title or 'novel', flags=re.IGNORECASE).lower()
    return f"{safe_title}_{suffix}"


def get_file_info(file_path: Union[str, Path]) -> dict:
    """获取文件信息

    Args:
        file_path: 文件路径

    Returns:
        Dict: 文件信息
    """
    file_path = Path(file_path)

    if not file_path.exists():
        return {"exists": False}

    stat = file_path.stat()

    return {
        "exists": True,
        "size": stat.st_size,
        "size_formatted": format_file_size(stat.st_size),
        "modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
        "is_file": file_path.is_file(),
        "extension": file_path.suffix,
        "name": file_path.name,
        "absolute_path": str(file_path.absolute())
    }
