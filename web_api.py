"""
FastAPI 后端接口：
- /env            GET/POST 读取与更新 .env（可视化配置编辑）
- /novels         POST 创作新小说（后台任务）
- /novels/resume  POST 从保存的状态继续生成
- /jobs/{job_id}  GET 查询生成状态与实时稿件
- /state          GET 已保存状态摘要 / DELETE 丢弃全部状态
- /backup         POST 导出流水线备份与纯文本稿件
- /import         POST 上传 .txt/.md 文稿作为外部导入

同一时刻只允许一个生成任务。

启动方式：
  uvicorn web_api:app --reload --port 8000
"""
import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config import get_generation_config
from exceptions import (
    FileValidationError,
    IncompleteStateError,
    NovelGeneratorError,
    PipelineError,
    ValidationError,
)
from models.processing_state import derive_phase
from services.backup_service import (
    export_manuscript_text,
    export_pipeline_backup,
    import_external_document,
)
from services.llm_service import OpenAIService
from services.novel_generation_service import NovelGenerationService
from services.retrieval_index import RetrievalIndex
from services.state_store import JsonFileStateStore, StateKeys, StateStore, has_saved_state
from utils import truncate_text
from validators import validate_prompt

ENV_PATH = Path(".env")
UPLOAD_DIR = Path("outputs/uploads")
ALLOWED_KEYS = {
    "API_PROVIDER",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_API_BASE",
    "GEMINI_API_KEY",
    "GEMINI_MODEL",
    "GEMINI_SAFETY_SETTINGS",
    "MODEL_MAX_TOKENS",
    "MAX_RETRY",
    "RETRY_BASE_DELAY",
    "RETRIEVAL_TOP_K",
    "DEFAULT_PAGE_COUNT",
    "STORY_BIBLE_PROMPT_TEMPLATE",
    "OUTLINE_PROMPT_TEMPLATE",
    "CHAPTER_SYSTEM_INSTRUCTION",
    "SUMMARY_SYSTEM_INSTRUCTION",
}


def load_env_file() -> Dict[str, str]:
    if not ENV_PATH.exists():
        return {}
    data: Dict[str, str] = {}
    for line in ENV_PATH.read_text(encoding="utf-8").splitlines():
        if not line or line.strip().startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip()
    return data


def save_env_file(updates: Dict[str, str]) -> None:
    existing = load_env_file()
    existing.update(updates)
    for key, value in updates.items():
        os.environ[key] = value
    lines: List[str] = []
    for k, v in existing.items():
        lines.append(f"{k}={v}")
    ENV_PATH.write_text("\n".join(lines) + "\n", encoding="utf-8")


def mask_value(key: str, value: str) -> str:
    if "KEY" in key.upper():
        if not value:
            return ""
        return "*" * max(4, len(value) - 4) + value[-4:]
    return value


class EnvUpdate(BaseModel):
    updates: Dict[str, str]


class NovelRequest(BaseModel):
    prompt: str
    page_count: Optional[int] = Field(default=None, ge=0)


@dataclass
class Job:
    id: str
    kind: str = "new"  # new|resume
    status: str = "pending"  # pending|running|success|error
    message: str = ""
    phase: str = ""
    progress: float = 0.0
    chapter_index: Optional[int] = None
    total_chapters: int = 0
    manuscript: str = ""
    error: Optional[Dict[str, Any]] = None
    result: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def log(self, text: str) -> None:
        """Append a log line and keep list size bounded."""
        self.logs.append(text)
        if len(self.logs) > 200:
            # 只保留最近 200 条，避免内存增长过快
            self.logs = self.logs[-200:]

    @property
    def is_active(self) -> bool:
        return self.status in ("pending", "running")


JOBS: Dict[str, Job] = {}
_BACKGROUND_TASKS: set = set()


def _spawn(coro) -> None:
    """启动后台任务并保持引用直到完成"""
    task = asyncio.create_task(coro)
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)


def get_state_store() -> StateStore:
    return JsonFileStateStore(get_generation_config().state_dir)


def create_generation_service(progress_callback) -> NovelGenerationService:
    return NovelGenerationService(
        state_store=get_state_store(),
        retrieval_index=RetrievalIndex(),
        progress_callback=progress_callback,
    )


def _active_job() -> Optional[Job]:
    for job in JOBS.values():
        if job.is_active:
            return job
    return None


def _ensure_idle() -> None:
    active = _active_job()
    if active is not None:
        raise HTTPException(status_code=409, detail=f"已有生成任务在运行: {active.id}")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    # 关闭共享的HTTP连接池
    await OpenAIService.close_http_clients()


app = FastAPI(title="Novel Generator API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/env")
def get_env() -> Dict[str, Any]:
    data = load_env_file()
    masked = {k: mask_value(k, v) for k, v in data.items()}
    return {"env": data, "masked": masked}


@app.post("/env")
def update_env(body: EnvUpdate):
    bad_keys = [k for k in body.updates if k not in ALLOWED_KEYS]
    if bad_keys:
        raise HTTPException(status_code=400, detail=f"不允许修改的键: {bad_keys}")
    save_env_file(body.updates)
    return {"ok": True}


async def _run_job(job: Job, req: Optional[NovelRequest]):
    job.status = "running"
    job.progress = 0.0
    job.result = {}
    job.log("开始继续生成" if req is None else f"开始创作: {truncate_text(req.prompt, 80)}")

    def handle_progress(info: Dict[str, Any]) -> None:
        job.progress = info.get("progress", job.progress)
        job.chapter_index = info.get("chapter_index")
        job.total_chapters = info.get("total_chapters", job.total_chapters)
        job.manuscript = info.get("manuscript", job.manuscript)
        if info.get("phase"):
            job.phase = info["phase"]
        message = info.get("message")
        if message and message != job.message:
            job.message = message
            job.log(message)
        if info.get("last_error"):
            job.log(f"错误: {info['last_error']}")

    try:
        service = create_generation_service(handle_progress)
        if req is None:
            result = await service.resume_novel()
        else:
            result = await service.generate_novel(req.prompt, page_count=req.page_count)
        job.result.update(result)
        job.manuscript = result["manuscript"]
        job.progress = 1.0
        job.status = "success"
        job.log("生成完成")

    except Exception as e:  # noqa: BLE001
        job.status = "error"
        job.message = str(e)
        job.error = {"type": type(e).__name__, "message": str(e)}
        if isinstance(e, PipelineError):
            job.error.update(phase=e.phase, chapter=e.chapter_number)
        elif isinstance(e, IncompleteStateError):
            job.error["missing_keys"] = e.missing_keys
        job.log(f"错误: {e}")


@app.post("/novels")
async def start_novel(req: NovelRequest):
    try:
        validate_prompt(req.prompt)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _ensure_idle()

    job = Job(id=str(uuid.uuid4()), kind="new")
    JOBS[job.id] = job
    _spawn(_run_job(job, req))
    return {"job_id": job.id}


@app.post("/novels/resume")
async def resume_novel():
    _ensure_idle()
    if not await has_saved_state(get_state_store()):
        raise HTTPException(status_code=404, detail="没有可恢复的进度")

    job = Job(id=str(uuid.uuid4()), kind="resume")
    JOBS[job.id] = job
    _spawn(_run_job(job, None))
    return {"job_id": job.id}


@app.get("/jobs/{job_id}")
def get_job(job_id: str, include_text: bool = True):
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job 不存在")
    return {
        "id": job.id,
        "kind": job.kind,
        "status": job.status,
        "phase": job.phase,
        "message": job.message,
        "progress": job.progress,
        "chapter_index": job.chapter_index,
        "total_chapters": job.total_chapters,
        "manuscript_length": len(job.manuscript),
        "manuscript": job.manuscript if include_text else None,
        "error": job.error,
        "result": {k: v for k, v in job.result.items() if k != "manuscript"},
        "logs": job.logs,
    }


@app.get("/state")
async def get_state():
    store = get_state_store()
    outline = await store.get(StateKeys.OUTLINE)
    chapters = await store.get(StateKeys.CHAPTERS)
    is_external = bool(await store.get(StateKeys.IS_EXTERNAL))
    total = len(outline.get("chapters") or []) if isinstance(outline, dict) else 0
    done = len(chapters) if isinstance(chapters, list) else 0
    phase = derive_phase(
        has_story_bible=await store.get(StateKeys.STORY_BIBLE) is not None,
        has_outline=isinstance(outline, dict),
        chapters_done=done,
        total_chapters=total,
        is_external=is_external,
    )
    return {
        "has_saved_state": await has_saved_state(store),
        "title": await store.get(StateKeys.NOVEL_TITLE),
        "phase": phase.value,
        "is_external": is_external,
        "chapters_done": done,
        "total_chapters": total,
        "forbidden_phrases": await store.get(StateKeys.FORBIDDEN_PHRASES) or [],
    }


@app.delete("/state")
async def delete_state():
    _ensure_idle()
    await get_state_store().clear()
    return {"ok": True}


@app.post("/backup")
async def create_backup():
    store = get_state_store()
    try:
        backup_path = await export_pipeline_backup(store)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))

    files = {"backup": str(backup_path)}
    try:
        files["manuscript"] = str(await export_manuscript_text(store))
    except ValidationError:
        pass
    return files


@app.post("/import")
async def import_document(file: UploadFile = File(...), title: Optional[str] = Form(None)):
    _ensure_idle()
    if file.content_type not in ("text/plain", "text/markdown", "application/octet-stream"):
        raise HTTPException(status_code=400, detail="仅支持文本文件")
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    dest = UPLOAD_DIR / Path(file.filename or "upload.txt").name
    content = await file.read()
    if len(content) > 100 * 1024 * 1024:
        raise HTTPException(status_code=400, detail="文件过大，限制100MB")
    dest.write_bytes(content)

    try:
        summary = await import_external_document(get_state_store(), RetrievalIndex(), dest, title=title)
    except (FileValidationError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NovelGeneratorError as e:
        raise HTTPException(status_code=422, detail=str(e))
    finally:
        dest.unlink(missing_ok=True)
    return summary


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("web_api:app", host="0.0.0.0", port=8000, reload=True)
