"""
LLM服务模块
提供结构化生成与流式生成两种统一调用接口，结构化调用带指数退避重试
"""
import asyncio
import json
import random
import re
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, AsyncIterator, Awaitable, Callable, TypeVar
from dataclasses import dataclass
import logging
from datetime import datetime

from config import get_api_config, get_generation_config
from exceptions import (
    APIError,
    APIKeyError,
    EmptyResponseError,
    NovelGeneratorError,
    RateLimitError,
    SchemaMismatchError,
    ServerError,
    TransportError,
)
from validators import validate_api_provider

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class LLMResponse:
    """LLM响应模型"""
    content: str
    token_usage: Optional[Dict[str, int]] = None
    response_time: Optional[float] = None
    model: Optional[str] = None
    finish_reason: Optional[str] = None


def _extract_status(exc: Exception) -> Optional[int]:
    """尽量从SDK异常中取出HTTP状态码"""
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return int(value)
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return int(value)
    return None


def _extract_retry_after(exc: Exception) -> Optional[float]:
    """读取服务端建议的重试等待时间（retry-after 头）"""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    retry_after = headers.get("retry-after")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except (TypeError, ValueError):
        return None


def classify_error(exc: Exception) -> NovelGeneratorError:
    """将SDK异常归类为项目内的错误类型

    429/速率限制 -> RateLimitError，5xx -> ServerError，认证失败 -> APIKeyError，
    其余一律视为 TransportError（不重试）。
    """
    if isinstance(exc, NovelGeneratorError):
        return exc

    status = _extract_status(exc)
    error_str = str(exc).lower()

    if (status == 429
            or ("rate" in error_str and "limit" in error_str)
            or "resource exhausted" in error_str
            or "resource_exhausted" in error_str):
        return RateLimitError(f"API速率限制: {exc}", retry_after=_extract_retry_after(exc))

    if status is not None and 500 <= status < 600:
        return ServerError(f"服务端错误 ({status}): {exc}", status_code=status)

    if (status in (401, 403)
            or "unauthorized" in error_str
            or "authentication" in error_str
            or "api key not valid" in error_str):
        return APIKeyError("API密钥无效或已过期", details=str(exc))

    return TransportError(f"API调用失败: {exc}", status_code=status)


def compute_backoff(attempt: int, base_delay: float, error: Optional[Exception] = None) -> float:
    """第 attempt 次（从0开始）失败后的等待时间：2^attempt * base_delay + 随机抖动"""
    if isinstance(error, RateLimitError) and error.retry_after:
        return float(error.retry_after)
    return (2 ** attempt) * base_delay + random.uniform(0, base_delay)


async def call_with_retry(fn: Callable[[], Awaitable[T]],
                          max_retries: int = 3,
                          base_delay: float = 1.0,
                          label: Optional[str] = None) -> T:
    """对可重试错误（速率限制、5xx）做指数退避重试

    不可重试的错误或重试次数用尽时，原样抛出最后一次的异常。
    """
    label_info = f" [{label}]" if label else ""
    attempts = max(1, max_retries)

    for attempt in range(attempts):
        try:
            return await fn()
        except APIError as e:
            if not e.is_retryable or attempt == attempts - 1:
                if e.is_retryable:
                    logger.error(f"LLM API多次失败{label_info}: {e.message}")
                raise

            wait_time = compute_backoff(attempt, base_delay, e)
            logger.warning(
                f"API调用失败{label_info}，{wait_time:.1f}秒后重试 "
                f"(尝试 {attempt + 1}/{attempts}): {e.message}"
            )
            await asyncio.sleep(wait_time)

    raise AssertionError("unreachable")


# 结构化响应字段类型，字符串必须非空
_FIELD_TYPES = {"STRING": str, "ARRAY": list, "OBJECT": dict}


def _matches_type(value: Any, expected: Optional[str]) -> bool:
    python_type = _FIELD_TYPES.get(expected or "")
    if python_type is None:
        return True
    if not isinstance(value, python_type):
        return False
    return python_type is not str or bool(value.strip())


def parse_structured_response(text: Optional[str], schema: Dict[str, Any]) -> Dict[str, Any]:
    """解析结构化响应并检查必需字段

    Raises:
        EmptyResponseError: 响应为空
        SchemaMismatchError: 不是JSON对象、缺少必需字段或必需字段类型不符
    """
    if text is None or not text.strip():
        raise EmptyResponseError()

    cleaned = _FENCE_PATTERN.sub("", text.strip())

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # 尝试提取JSON部分
        json_match = re.search(r'\{.*\}', cleaned, re.DOTALL)
        if not json_match:
            raise SchemaMismatchError("响应无法解析为JSON", details=text[:200])
        try:
            data = json.loads(json_match.group())
        except json.JSONDecodeError as e:
            raise SchemaMismatchError(f"响应无法解析为JSON: {e}", details=text[:200]) from e

    if not isinstance(data, dict):
        raise SchemaMismatchError("响应不是JSON对象", details=text[:200])

    missing = [key for key in schema.get("required", []) if key not in data]
    if missing:
        raise SchemaMismatchError(f"响应缺少必需字段: {', '.join(missing)}", details=text[:200])

    properties = schema.get("properties", {})
    for key in schema.get("required", []):
        expected = properties.get(key, {}).get("type")
        if not _matches_type(data[key], expected):
            raise SchemaMismatchError(f"必需字段类型不符: {key} 应为 {expected}", details=text[:200])

    return data


class LLMService(ABC):
    """LLM服务基类"""

    def __init__(self):
        self.api_config = get_api_config()
        self.generation_config = get_generation_config()
        # Token统计
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.total_tokens = 0
        self._init_client()

    @abstractmethod
    def _init_client(self) -> None:
        """初始化客户端"""
        pass

    @abstractmethod
    async def _call_api(self,
                        prompt: str,
                        system_instruction: Optional[str],
                        temperature: float,
                        response_schema: Optional[Dict[str, Any]]) -> LLMResponse:
        """调用API的具体实现（一次完整响应）"""
        pass

    @abstractmethod
    def _stream_api(self,
                    prompt: str,
                    system_instruction: Optional[str],
                    temperature: float) -> AsyncIterator[str]:
        """流式调用的具体实现，按到达顺序产出文本片段"""
        pass

    @property
    def token_usage(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.total_prompt_tokens,
            "completion_tokens": self.total_completion_tokens,
            "total_tokens": self.total_tokens,
        }

    def reset_usage(self) -> None:
        """重置token统计（每次运行开始时调用）"""
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.total_tokens = 0

    def _record_usage(self, llm_response: LLMResponse, label_info: str) -> None:
        """累计token使用情况"""
        if not llm_response.token_usage:
            return
        prompt_tokens = llm_response.token_usage.get('prompt_tokens', 0) or 0
        completion_tokens = llm_response.token_usage.get('completion_tokens', 0) or 0
        total_tokens = llm_response.token_usage.get('total_tokens', 0) or 0

        self.total_prompt_tokens += prompt_tokens
        self.total_completion_tokens += completion_tokens
        self.total_tokens += total_tokens

        logger.debug(
            f"Token使用{label_info}: 输入={prompt_tokens}, 输出={completion_tokens}, 总计={total_tokens}"
        )

    async def generate_structured(self,
                                  prompt: str,
                                  schema: Dict[str, Any],
                                  system_instruction: Optional[str] = None,
                                  temperature: float = 0.7,
                                  label: Optional[str] = None) -> Dict[str, Any]:
        """
        结构化生成：请求符合 schema 的JSON结果

        Args:
            prompt: 提示词
            schema: 响应结构描述
            system_instruction: 系统指令（可选）
            temperature: 生成温度
            label: 日志中的调用标签

        Returns:
            Dict[str, Any]: 解析后的结果

        Raises:
            APIError: 重试用尽或不可重试的调用失败，以及空响应/结构不符
        """
        label_info = f" [{label}]" if label else ""

        async def attempt() -> LLMResponse:
            logger.debug(f"调用LLM API{label_info}...")
            start_time = datetime.now()
            try:
                llm_response = await self._call_api(prompt, system_instruction, temperature, schema)
            except Exception as e:
                raise classify_error(e) from e
            llm_response.response_time = (datetime.now() - start_time).total_seconds()
            logger.debug(f"LLM API调用成功{label_info}，耗时: {llm_response.response_time:.2f}秒")
            return llm_response

        llm_response = await call_with_retry(
            attempt,
            max_retries=self.generation_config.max_retry,
            base_delay=self.generation_config.retry_base_delay,
            label=label,
        )
        self._record_usage(llm_response, label_info)
        return parse_structured_response(llm_response.content, schema)

    async def generate_stream(self,
                              prompt: str,
                              system_instruction: Optional[str] = None,
                              temperature: float = 0.75,
                              label: Optional[str] = None) -> AsyncIterator[str]:
        """
        流式生成：按到达顺序产出非空文本片段，不做中途重试
        """
        label_info = f" [{label}]" if label else ""
        logger.debug(f"开始流式生成{label_info}...")
        fragments = 0
        try:
            async for fragment in self._stream_api(prompt, system_instruction, temperature):
                if fragment:
                    fragments += 1
                    yield fragment
        except Exception as e:
            error = classify_error(e)
            logger.error(f"流式生成失败{label_info}: {error}")
            if error is e:
                raise
            raise error from e
        logger.debug(f"流式生成完成{label_info}，共 {fragments} 个片段")


class OpenAIService(LLMService):
    """OpenAI服务实现"""

    _http_client: Optional["httpx.AsyncClient"] = None
    _proxy_clients: Dict[str, "httpx.AsyncClient"] = {}

    @classmethod
    def get_http_client(cls, proxy_url: Optional[str] = None, timeout: float = 120.0) -> "httpx.AsyncClient":
        import httpx

        if proxy_url:
            client = cls._proxy_clients.get(proxy_url)
            if client is None:
                client = httpx.AsyncClient(
                    proxy=proxy_url,
                    limits=httpx.Limits(max_connections=20),
                    timeout=timeout
                )
                cls._proxy_clients[proxy_url] = client
            return client

        if cls._http_client is None:
            cls._http_client = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=20),
                timeout=timeout
            )
        return cls._http_client

    @classmethod
    async def close_http_clients(cls) -> None:
        """关闭所有HTTP客户端连接池"""
        for proxy_url, client in list(cls._proxy_clients.items()):
            try:
                await client.aclose()
                logger.debug(f"已关闭代理客户端: {proxy_url}")
            except Exception as e:
                logger.warning(f"关闭代理客户端失败 ({proxy_url}): {e}")
        cls._proxy_clients.clear()

        if cls._http_client is not None:
            try:
                await cls._http_client.aclose()
                logger.debug("已关闭主HTTP客户端")
            except Exception as e:
                logger.warning(f"关闭主HTTP客户端失败: {e}")
            cls._http_client = None

    def _init_client(self) -> None:
        """初始化OpenAI客户端"""
        try:
            from openai import AsyncOpenAI

            proxy_url = self.generation_config.proxy_url if self.generation_config.use_proxy else None
            http_client = self.get_http_client(proxy_url, self.generation_config.request_timeout)
            if proxy_url:
                logger.debug(f"OpenAI客户端配置代理: {proxy_url}")

            self.client = AsyncOpenAI(
                api_key=self.api_config.api_key,
                base_url=self.api_config.base_url,
                http_client=http_client
            )
            logger.info(f"OpenAI API客户端初始化成功 (模型: {self.api_config.model_name})")

        except NovelGeneratorError:
            raise
        except Exception as e:
            raise APIKeyError(f"OpenAI API配置失败: {str(e)}")

    @staticmethod
    def _build_messages(prompt: str,
                        system_instruction: Optional[str],
                        response_schema: Optional[Dict[str, Any]] = None) -> list:
        system_parts = [system_instruction] if system_instruction else []
        if response_schema is not None:
            # json_object 模式要求提示中出现 JSON 字样，并通过结构说明约束字段
            system_parts.append(
                "Respond ONLY with a JSON object that conforms to this schema:\n"
                + json.dumps(response_schema, ensure_ascii=False)
            )
        messages = []
        if system_parts:
            messages.append({"role": "system", "content": "\n\n".join(system_parts)})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _call_api(self,
                        prompt: str,
                        system_instruction: Optional[str],
                        temperature: float,
                        response_schema: Optional[Dict[str, Any]]) -> LLMResponse:
        """调用OpenAI API"""
        kwargs: Dict[str, Any] = {}
        if response_schema is not None:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(
            model=self.api_config.model_name,
            messages=self._build_messages(prompt, system_instruction, response_schema),
            temperature=temperature,
            timeout=self.generation_config.request_timeout,
            **kwargs
        )

        return LLMResponse(
            content=response.choices[0].message.content or "",
            token_usage=response.usage.model_dump() if response.usage else None,
            model=response.model,
            finish_reason=response.choices[0].finish_reason
        )

    async def _stream_api(self,
                          prompt: str,
                          system_instruction: Optional[str],
                          temperature: float) -> AsyncIterator[str]:
        """流式调用OpenAI API"""
        stream = await self.client.chat.completions.create(
            model=self.api_config.model_name,
            messages=self._build_messages(prompt, system_instruction),
            temperature=temperature,
            timeout=self.generation_config.request_timeout,
            stream=True,
        )
        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content


class GeminiService(LLMService):
    """Gemini服务实现"""

    def _init_client(self) -> None:
        """初始化Gemini客户端"""
        try:
            import google.generativeai as genai

            genai.configure(api_key=self.api_config.api_key)

            safety_mapping = {
                "BLOCK_NONE": genai.types.HarmBlockThreshold.BLOCK_NONE,
                "BLOCK_ONLY_HIGH": genai.types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
                "BLOCK_MEDIUM_AND_ABOVE": genai.types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
                "BLOCK_LOW_AND_ABOVE": genai.types.HarmBlockThreshold.BLOCK_LOW_AND_ABOVE,
            }

            safety_threshold = safety_mapping.get(
                self.api_config.gemini_safety,
                genai.types.HarmBlockThreshold.BLOCK_ONLY_HIGH
            )

            self.safety_settings = [
                {"category": category, "threshold": safety_threshold}
                for category in (
                    genai.types.HarmCategory.HARM_CATEGORY_HARASSMENT,
                    genai.types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
                    genai.types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
                    genai.types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
                )
            ]

            logger.info(f"Gemini API初始化成功 (模型: {self.api_config.model_name})")
            logger.info(f"安全设置: {self.api_config.gemini_safety}")

        except NovelGeneratorError:
            raise
        except Exception as e:
            raise APIKeyError(f"Gemini API配置失败: {str(e)}")

    def _model(self, system_instruction: Optional[str]):
        import google.generativeai as genai

        return genai.GenerativeModel(
            self.api_config.model_name,
            system_instruction=system_instruction or None,
        )

    @staticmethod
    def _check_blocked(response) -> None:
        """检查内容是否被安全过滤器阻止"""
        feedback = getattr(response, 'prompt_feedback', None)
        block_reason = getattr(feedback, 'block_reason', None) if feedback else None
        if block_reason:
            raise APIError(f"内容被安全过滤器阻止: {block_reason}", error_code="blocked", is_retryable=False)

    @staticmethod
    def _extract_text(response) -> str:
        """从候选响应中拼接文本，没有内容时返回空串"""
        parts_text = []
        for candidate in getattr(response, 'candidates', None) or []:
            content = getattr(candidate, 'content', None)
            for part in getattr(content, 'parts', None) or []:
                text = getattr(part, 'text', None)
                if text:
                    parts_text.append(text)
            if parts_text:
                break
        return ''.join(parts_text)

    async def _call_api(self,
                        prompt: str,
                        system_instruction: Optional[str],
                        temperature: float,
                        response_schema: Optional[Dict[str, Any]]) -> LLMResponse:
        """调用Gemini API"""
        import google.generativeai as genai

        generation_config = {"temperature": temperature}
        if response_schema is not None:
            generation_config["response_mime_type"] = "application/json"
            generation_config["response_schema"] = response_schema

        model = self._model(system_instruction)

        # 在线程池中执行同步调用
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            lambda: model.generate_content(
                prompt,
                generation_config=genai.GenerationConfig(**generation_config),
                safety_settings=self.safety_settings,
                request_options={"timeout": self.generation_config.request_timeout},
            )
        )

        self._check_blocked(response)

        usage = getattr(response, 'usage_metadata', None)
        token_usage = None
        if usage is not None:
            token_usage = {
                "prompt_tokens": getattr(usage, 'prompt_token_count', 0) or 0,
                "completion_tokens": getattr(usage, 'candidates_token_count', 0) or 0,
                "total_tokens": getattr(usage, 'total_token_count', 0) or 0,
            }

        return LLMResponse(
            content=self._extract_text(response),
            token_usage=token_usage,
            model=self.api_config.model_name,
        )

    async def _stream_api(self,
                          prompt: str,
                          system_instruction: Optional[str],
                          temperature: float) -> AsyncIterator[str]:
        """流式调用Gemini API"""
        import google.generativeai as genai

        model = self._model(system_instruction)
        response = await model.generate_content_async(
            prompt,
            generation_config=genai.GenerationConfig(temperature=temperature),
            safety_settings=self.safety_settings,
            stream=True,
        )
        async for chunk in response:
            self._check_blocked(chunk)
            text = self._extract_text(chunk)
            if text:
                yield text


def create_llm_service() -> LLMService:
    """工厂函数：创建LLM服务实例"""
    api_config = get_api_config()
    provider = validate_api_provider(api_config.provider)

    if provider == 'gemini':
        return GeminiService()
    return OpenAIService()
