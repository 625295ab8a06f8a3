"""
小说生成工具 - 主程序
命令行交互入口
"""

import asyncio
import logging
from typing import Any

from config import get_api_config, get_generation_config, init_config
from exceptions import (
    APIKeyError,
    ConfigurationError,
    IncompleteStateError,
    NovelGeneratorError,
    PipelineError,
    ValidationError,
)
from services.backup_service import (
    export_manuscript_text,
    export_pipeline_backup,
    import_external_document,
)
from services.llm_service import OpenAIService
from services.novel_generation_service import NovelGenerationService
from services.retrieval_index import RetrievalIndex
from services.state_store import JsonFileStateStore, StateKeys, has_saved_state
from utils import get_file_info, setup_logging
from validators import validate_page_count

setup_logging()

logger = logging.getLogger(__name__)

MODES = {
    "1": "web_ui",
    "2": "new",
    "3": "resume",
    "4": "export",
    "5": "import",
    "6": "reset",
}


class NovelGeneratorApp:
    """小说生成应用主类"""

    def __init__(self):
        self.generation_config = get_generation_config()
        self.state_store = JsonFileStateStore(self.generation_config.state_dir)
        self.retrieval_index = RetrievalIndex()
        self._generation_service: NovelGenerationService | None = None
        self._last_message = ""

    @property
    def generation_service(self) -> NovelGenerationService:
        """延迟创建，避免在只做导出/导入时就要求API密钥"""
        if self._generation_service is None:
            self._generation_service = NovelGenerationService(
                state_store=self.state_store,
                retrieval_index=self.retrieval_index,
                progress_callback=self._on_progress,
            )
        return self._generation_service

    async def run(self) -> None:
        """运行主程序"""
        try:
            self._print_welcome()

            if await has_saved_state(self.state_store):
                title = await self.state_store.get(StateKeys.NOVEL_TITLE) or "未命名"
                print(f"📋 欢迎回来！发现已保存的小说: 《{title}》\n")

            mode = self._select_mode()

            if mode == "web_ui":
                self._start_web_ui()
            elif mode == "new":
                await self._new_novel_mode()
            elif mode == "resume":
                await self._resume_mode()
            elif mode == "export":
                await self._export_mode()
            elif mode == "import":
                await self._import_mode()
            elif mode == "reset":
                await self._reset_mode()

        except KeyboardInterrupt:
            print("\n用户中断操作，已保存的进度可在下次选择“继续生成”恢复")
        except (APIKeyError, ConfigurationError) as e:
            print(f"\n❌ 配置错误: {e}")
            print("\n💡 请检查环境变量或.env文件中的配置")
        except PipelineError as e:
            print(f"\n❌ {e}")
            if e.chapter_number is not None:
                print(f"   已完成的章节已保存，可选择“继续生成”从第 {e.chapter_number} 章恢复")
        except ValidationError as e:
            print(f"\n❌ 输入错误: {e}")
        except NovelGeneratorError as e:
            print(f"\n❌ 处理错误: {e}")
        except Exception as e:
            logger.exception("未预期的错误")
            print(f"\n❌ 发生未知错误: {e}")
            print("请查看日志文件 novel_generator.log 获取详细信息")

    def _print_welcome(self) -> None:
        """打印欢迎信息"""
        print("\n" + "=" * 60)
        print("📖 小说生成工具")
        print("=" * 60)
        api_cfg = get_api_config()
        print(f"🔧 API提供商: {api_cfg.provider.upper()} ({api_cfg.model_name})")
        print(f"💾 状态目录: {self.generation_config.state_dir}")
        print("=" * 60 + "\n")

    def _select_mode(self) -> str:
        """选择运行模式"""
        while True:
            print("请选择模式：")
            print("  1. 启用 Web API（需要 uvicorn / fastapi 支持）")
            print("  2. 创作新小说")
            print("  3. 继续生成已保存的小说")
            print("  4. 导出备份与稿件")
            print("  5. 导入外部文稿（.txt/.md）")
            print("  6. 丢弃已保存的状态")

            choice = input("\n请输入选项 (1-6，直接回车默认 Web API): ").strip()
            if not choice:
                return "web_ui"
            if choice in MODES:
                return MODES[choice]
            print("❌ 无效选项，请输入 1-6\n")

    def _start_web_ui(self) -> None:
        """启动 Web API（FastAPI + uvicorn）"""
        import uvicorn

        print("\n🚀 正在启动 Web API（http://localhost:8000）...")
        print("   若需自定义端口，请直接运行：uvicorn web_api:app --reload --port 8000")
        uvicorn.run("web_api:app", host="0.0.0.0", port=8000, reload=True)

    async def _new_novel_mode(self) -> None:
        """创作新小说"""
        if await has_saved_state(self.state_store):
            confirm = input("⚠️  开始新小说会丢弃已保存的进度，是否继续？(y/n): ").strip().lower()
            if confirm not in ["y", "yes"]:
                print("操作已取消")
                return

        prompt = input("\n请输入小说创意: ").strip()
        default_pages = self.generation_config.default_page_count
        pages_input = input(f"目标页数（直接回车默认 {default_pages}）: ").strip()
        page_count = validate_page_count(pages_input) if pages_input else default_pages

        print("\n🚀 开始生成...")
        result = await self.generation_service.generate_novel(prompt, page_count=page_count)
        self._show_results(result)

    async def _resume_mode(self) -> None:
        """从保存的状态继续生成"""
        if not await has_saved_state(self.state_store):
            print("没有可恢复的进度")
            return

        try:
            result = await self.generation_service.resume_novel()
        except IncompleteStateError as e:
            print(f"\n❌ {e}")
            if e.missing_keys:
                print(f"   缺少: {', '.join(e.missing_keys)}")
            confirm = input("是否丢弃已保存的状态以便重新开始？(y/n): ").strip().lower()
            if confirm in ["y", "yes"]:
                await self.generation_service.reset()
                print("✓ 已丢弃，请选择“创作新小说”重新开始")
            return

        self._show_results(result)

    async def _export_mode(self) -> None:
        """导出流水线备份和纯文本稿件"""
        backup_path = await export_pipeline_backup(self.state_store)
        print(f"✓ 流水线备份: {backup_path} ({get_file_info(backup_path)['size_formatted']})")
        try:
            text_path = await export_manuscript_text(self.state_store)
            print(f"✓ 稿件: {text_path} ({get_file_info(text_path)['size_formatted']})")
        except ValidationError as e:
            print(f"⚠️  未导出稿件: {e}")

    async def _import_mode(self) -> None:
        """导入外部文稿"""
        file_path = input("\n请输入要导入的文件路径: ").strip()
        title = input("标题（直接回车使用文件名）: ").strip() or None
        summary = await import_external_document(
            self.state_store, self.retrieval_index, file_path, title=title
        )
        print(f"✓ 已导入《{summary['title']}》，共 {summary['characters']:,} 字符")

    async def _reset_mode(self) -> None:
        """丢弃所有已保存的状态"""
        confirm = input("确认丢弃所有已保存的状态？(y/n): ").strip().lower()
        if confirm not in ["y", "yes"]:
            print("操作已取消")
            return
        await self.state_store.clear()
        await self.retrieval_index.clear()
        print("✓ 已丢弃所有状态")

    def _on_progress(self, payload: dict[str, Any]) -> None:
        """打印阶段变化；流式生成期间原地刷新字数"""
        message = payload.get("message", "")
        if message != self._last_message:
            self._last_message = message
            print(f"\n▶ {message}")
            if payload.get("last_error"):
                print(f"   ❌ {payload['last_error']}")
        elif payload.get("phase") == "chapter":
            print(f"\r   稿件长度: {len(payload.get('manuscript', '')):,} 字符", end="", flush=True)

    def _show_results(self, result: dict) -> None:
        """显示生成结果"""
        print("\n" + "=" * 60)
        print("🎉 生成完成！")
        print("=" * 60)
        print(f"📖 标题: {result['title']}")
        if result["is_external"]:
            print("📄 外部导入的文稿，不继续生成")
        else:
            print(f"✅ 章节数: {result['chapter_count']}")
            if result["resumed_from"] is not None:
                print(f"🔁 从第 {result['resumed_from'] + 1} 章恢复")
            print(f"🚫 禁用短语: {len(result['forbidden_phrases'])} 个")
            print(f"🔢 Token使用: {result['token_usage'].get('total_tokens', 0):,}")
        print(f"⏱️  处理时间: {result['processing_time']:.1f} 秒")
        print(f"📝 稿件长度: {len(result['manuscript']):,} 字符")
        print("\n💡 选择模式 4 可导出备份与纯文本稿件")


async def main():
    """主入口函数"""
    # 初始化配置（加载 .env 文件并检查生成参数）
    init_config()
    app = NovelGeneratorApp()
    try:
        await app.run()
    finally:
        await OpenAIService.close_http_clients()


def cli():
    """命令行入口（novel-generator）"""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
