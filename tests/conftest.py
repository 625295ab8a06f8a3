"""
Pytest 配置文件
为测试提供环境变量，并隔离配置单例与状态目录
"""
import pytest

import config


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch, tmp_path):
    """为所有测试设置必要的环境变量"""
    # 默认使用 gemini 提供商，测试中不会真正调用
    monkeypatch.setenv('API_PROVIDER', 'gemini')

    # 设置测试用的 API Key（不需要真实的 key，测试使用 mock）
    monkeypatch.setenv('GEMINI_API_KEY', 'test-gemini-key')
    monkeypatch.setenv('OPENAI_API_KEY', 'test-key-for-ci')
    monkeypatch.setenv('OPENAI_MODEL', 'gpt-4o-mini')

    # 状态与输出目录放到临时目录
    monkeypatch.setenv('OUTPUT_DIR', str(tmp_path / 'outputs'))
    monkeypatch.delenv('STATE_DIR', raising=False)

    # 自定义提示词模板不应从开发者环境泄漏进测试
    for name in (
        'STORY_BIBLE_PROMPT_TEMPLATE',
        'OUTLINE_PROMPT_TEMPLATE',
        'CHAPTER_SYSTEM_INSTRUCTION',
        'SUMMARY_SYSTEM_INSTRUCTION',
    ):
        monkeypatch.delenv(name, raising=False)

    config.reset_config()
    yield
    config.reset_config()
