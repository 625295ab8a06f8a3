"""
配置管理模块
使用环境变量管理配置，提高安全性
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from exceptions import APIKeyError, ConfigurationError

# 加载.env文件中的环境变量
load_dotenv()

SUPPORTED_API_PROVIDERS = ("gemini", "openai")


def _looks_like_placeholder(key: str | None) -> bool:
    """判断API密钥是否为空或仍是模板中的占位符"""
    if not key:
        return True
    lowered = key.lower()
    return "your_" in lowered or "here" in lowered


@dataclass
class APIConfig:
    """API配置类"""

    provider: str = field(default_factory=lambda: os.getenv("API_PROVIDER", "gemini").lower())
    gemini_key: str | None = field(default_factory=lambda: os.getenv("GEMINI_API_KEY"))
    gemini_model: str = field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-2.5-flash"))
    gemini_safety: str = field(
        default_factory=lambda: os.getenv("GEMINI_SAFETY_SETTINGS", "BLOCK_ONLY_HIGH")
    )
    openai_key: str | None = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    openai_base: str | None = field(default_factory=lambda: os.getenv("OPENAI_API_BASE"))
    openai_model: str = field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
    _validated: bool = field(default=False, init=False)

    def validate(self) -> None:
        """验证配置（延迟到实际使用时）"""
        if self._validated:
            return

        if self.provider not in SUPPORTED_API_PROVIDERS:
            raise ConfigurationError(
                f"不支持的API提供商: {self.provider}. "
                f"支持的提供商: {', '.join(SUPPORTED_API_PROVIDERS)}"
            )

        if self.provider == "gemini" and _looks_like_placeholder(self.gemini_key):
            raise ConfigurationError(
                "使用Gemini API时必须设置GEMINI_API_KEY环境变量。\n"
                "当前值看起来像是占位符，请在 .env 文件中填入真实的 API Key"
            )

        if self.provider == "openai" and _looks_like_placeholder(self.openai_key):
            raise ConfigurationError(
                "使用OpenAI API时必须设置OPENAI_API_KEY环境变量。\n"
                "当前值看起来像是占位符，请在 .env 文件中填入真实的 API Key。\n"
                "提示：OpenAI API Key 通常以 'sk-' 开头"
            )

        self._validated = True

    @property
    def api_key(self) -> str:
        """获取当前API密钥"""
        self.validate()

        if self.provider == "gemini":
            if not self.gemini_key:
                raise APIKeyError("Gemini API密钥未配置")
            return self.gemini_key
        if not self.openai_key:
            raise APIKeyError("OpenAI API密钥未配置")
        return self.openai_key

    @property
    def base_url(self) -> str | None:
        """获取API基础URL（仅OpenAI兼容接口使用）"""
        if self.provider == "openai":
            return self.openai_base
        return None

    @property
    def model_name(self) -> str:
        """获取模型名称"""
        if self.provider == "gemini":
            return self.gemini_model
        return self.openai_model


@dataclass
class GenerationConfig:
    """生成流水线配置类"""

    # 目录配置
    output_dir: str = field(default_factory=lambda: os.getenv("OUTPUT_DIR", "outputs"))
    state_dir: str = field(default="")

    # 重试参数
    max_retry: int = field(default_factory=lambda: int(os.getenv("MAX_RETRY", "3")))
    retry_base_delay: float = field(
        default_factory=lambda: float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    )
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "120"))
    )

    # 生成参数
    retrieval_top_k: int = field(default_factory=lambda: int(os.getenv("RETRIEVAL_TOP_K", "2")))
    words_per_page: int = field(default_factory=lambda: int(os.getenv("WORDS_PER_PAGE", "250")))
    default_page_count: int = field(
        default_factory=lambda: int(os.getenv("DEFAULT_PAGE_COUNT", "150"))
    )
    model_max_tokens: int = field(
        default_factory=lambda: int(os.getenv("MODEL_MAX_TOKENS", "1000000"))
    )

    # 温度
    temperature_story_bible: float = field(
        default_factory=lambda: float(os.getenv("TEMPERATURE_STORY_BIBLE", "0.8"))
    )
    temperature_outline: float = field(
        default_factory=lambda: float(os.getenv("TEMPERATURE_OUTLINE", "0.8"))
    )
    temperature_chapter: float = field(
        default_factory=lambda: float(os.getenv("TEMPERATURE_CHAPTER", "0.75"))
    )
    temperature_summary: float = field(
        default_factory=lambda: float(os.getenv("TEMPERATURE_SUMMARY", "0.5"))
    )

    # 代理配置
    use_proxy: bool = field(
        default_factory=lambda: os.getenv("USE_PROXY", "false").lower() == "true"
    )
    proxy_url: str = field(default_factory=lambda: os.getenv("PROXY_URL", "http://127.0.0.1:7897"))

    def __post_init__(self):
        """初始化后处理"""
        if not self.state_dir:
            self.state_dir = os.getenv("STATE_DIR") or os.path.join(self.output_dir, "state")

    def validate(self) -> None:
        """验证配置"""
        if self.max_retry <= 0:
            raise ConfigurationError("MAX_RETRY必须大于0")

        if self.retry_base_delay < 0:
            raise ConfigurationError("RETRY_BASE_DELAY不能小于0")

        if self.retrieval_top_k <= 0:
            raise ConfigurationError("RETRIEVAL_TOP_K必须大于0")

        if self.words_per_page <= 0:
            raise ConfigurationError("WORDS_PER_PAGE必须大于0")

        if self.model_max_tokens <= 0:
            raise ConfigurationError("MODEL_MAX_TOKENS必须大于0")

        for name in (
            "temperature_story_bible",
            "temperature_outline",
            "temperature_chapter",
            "temperature_summary",
        ):
            value = getattr(self, name)
            if not 0 <= value <= 2:
                raise ConfigurationError(f"{name.upper()}必须在0到2之间")


# 全局配置实例
_api_config = None
_generation_config = None


def get_api_config() -> APIConfig:
    """获取API配置单例"""
    global _api_config
    if _api_config is None:
        _api_config = APIConfig()
    return _api_config


def get_generation_config() -> GenerationConfig:
    """获取生成配置单例"""
    global _generation_config
    if _generation_config is None:
        _generation_config = GenerationConfig()
    return _generation_config


def reset_config() -> None:
    """丢弃配置单例，下次访问时重新读取环境变量"""
    global _api_config, _generation_config
    _api_config = None
    _generation_config = None


ENV_TEMPLATE = """# 小说生成工具环境变量配置
# 复制此文件并填入你的API密钥

# API提供商选择: gemini 或 openai
API_PROVIDER=gemini

# Gemini API配置
GEMINI_API_KEY=your_gemini_api_key_here
GEMINI_MODEL=gemini-2.5-flash
# GEMINI_SAFETY_SETTINGS=BLOCK_ONLY_HIGH

# OpenAI API配置（使用时取消注释并配置）
# OPENAI_API_KEY=your_openai_api_key_here
# OPENAI_API_BASE=https://api.openai.com/v1
# OPENAI_MODEL=gpt-4o-mini

# 生成参数（可选）
MAX_RETRY=3
RETRY_BASE_DELAY=1.0
RETRIEVAL_TOP_K=2
WORDS_PER_PAGE=250
DEFAULT_PAGE_COUNT=150

# 状态与输出目录（可选）
OUTPUT_DIR=outputs
# STATE_DIR=outputs/state

# 日志级别（可选）: DEBUG, INFO, WARNING, ERROR
LOG_LEVEL=INFO

# 代理配置（可选）
USE_PROXY=false
PROXY_URL=http://127.0.0.1:7897
"""


def create_env_file(env_file: str = ".env") -> bool:
    """创建.env文件模板（如果不存在），返回是否新建了文件"""
    if os.path.exists(env_file):
        return False
    with open(env_file, "w", encoding="utf-8") as f:
        f.write(ENV_TEMPLATE)
    print(f"✓ 已创建环境变量模板文件: {env_file}")
    print("  请编辑该文件并填入你的API密钥")
    return True


def init_config() -> tuple[APIConfig, GenerationConfig]:
    """初始化配置：缺少API密钥时生成.env模板，并校验生成参数"""
    if not os.getenv("GEMINI_API_KEY") and not os.getenv("OPENAI_API_KEY"):
        print("\n⚠️  警告: 未检测到API密钥环境变量")
        print("  建议使用环境变量或.env文件来管理API密钥")
        create_env_file()

    generation_config = get_generation_config()
    generation_config.validate()
    return get_api_config(), generation_config
