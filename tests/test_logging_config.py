"""测试日志配置功能"""

import logging

import pytest

import utils
from utils import setup_logging


@pytest.fixture(autouse=True)
def reset_logging_state():
    """每次测试前重置日志配置状态"""
    utils._logging_configured = False
    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    saved_level = root.level
    yield
    # 显式关闭处理器以释放文件句柄
    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)
    utils._logging_configured = False


def test_log_file_has_content(tmp_path):
    """测试日志文件可以正确写入内容"""
    log_file = tmp_path / "novel_generator.log"
    setup_logging(log_file=str(log_file))

    logging.getLogger("test_module").info("Test log message")

    content = log_file.read_text(encoding="utf-8")
    assert "Test log message" in content
    assert "test_module" in content
    assert " - INFO - " in content


def test_log_level_from_env(tmp_path, monkeypatch):
    """测试从环境变量读取日志级别"""
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    setup_logging(log_file=str(tmp_path / "debug.log"))
    assert logging.getLogger().level == logging.DEBUG


def test_unknown_level_falls_back_to_info(tmp_path, monkeypatch):
    """未知的日志级别回退为 INFO"""
    monkeypatch.setenv("LOG_LEVEL", "VERBOSE")
    setup_logging(log_file=str(tmp_path / "info.log"))
    assert logging.getLogger().level == logging.INFO


def test_explicit_level_wins(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    setup_logging(level=logging.WARNING, log_file=str(tmp_path / "warn.log"))
    assert logging.getLogger().level == logging.WARNING


def test_file_and_console_handlers(tmp_path):
    """同时输出到文件和控制台"""
    setup_logging(log_file=str(tmp_path / "both.log"))
    handlers = logging.getLogger().handlers
    assert any(isinstance(h, logging.FileHandler) for h in handlers)
    assert any(type(h) is logging.StreamHandler for h in handlers)


def test_logging_idempotent(tmp_path):
    """测试多次调用 setup_logging 不会重复添加处理器"""
    setup_logging(log_file=str(tmp_path / "once.log"))
    root_logger = logging.getLogger()
    handler_count_before = len(root_logger.handlers)

    setup_logging(log_file=str(tmp_path / "twice.log"))

    assert len(root_logger.handlers) == handler_count_before
    assert not (tmp_path / "twice.log").exists()
