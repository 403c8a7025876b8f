import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .compose import MetaPromptComposer
from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .errors import ResearchError
from .llm import OpenRouterClient
from .parallel import ParallelClient
from .runs import PollCoordinator, RunSubmitter
from .schemas import ComposeRequest, CreateRunRequest

logger = logging.getLogger("uvicorn.error")

SEARCH_OBJECTIVE_MAX = 5000
SEARCH_QUERIES_MAX = 5
SEARCH_QUERY_CHARS_MAX = 200


def _clamped_int(value: Any, default: int, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        return default
    if value in (float("inf"), float("-inf")):
        return default
    return min(high, max(low, int(value)))


def build_search_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and clamp a search request body into the upstream payload shape."""
    objective = body.get("objective")
    objective = objective.strip() if isinstance(objective, str) else ""
    raw_queries = body.get("searchQueries")
    if not isinstance(raw_queries, list):
        raw_queries = body.get("search_queries")
    if not isinstance(raw_queries, list):
        raw_queries = []
    queries: List[str] = [q.strip() for q in raw_queries if isinstance(q, str) and q.strip()]
    if not objective and not queries:
        raise ValueError("objective or searchQueries required")
    objective = objective[:SEARCH_OBJECTIVE_MAX]
    queries = [q[:SEARCH_QUERY_CHARS_MAX] for q in queries[:SEARCH_QUERIES_MAX]]
    payload: Dict[str, Any] = {
        "processor": "pro" if body.get("processor") == "pro" else "base",
        "max_results": _clamped_int(body.get("maxResults"), 5, 1, 25),
        "max_chars_per_result": _clamped_int(body.get("maxCharsPerResult"), 1500, 100, 30000),
    }
    if objective:
        payload["objective"] = objective
    if queries:
        payload["search_queries"] = queries
    source_policy = body.get("sourcePolicy", body.get("source_policy"))
    if isinstance(source_policy, dict) and source_policy:
        payload["source_policy"] = source_policy
    return payload


def configure_services(app: FastAPI, settings: AppSettings) -> None:
    """(Re)build the compose and run components around the shared HTTP clients."""
    chat_client = app.state.chat_client
    task_client = app.state.task_client
    app.state.settings = settings
    app.state.composer = MetaPromptComposer(
        chat_client,
        settings.compose_models,
        temperature=settings.compose_temperature,
        timeout_s=settings.compose_timeout_s,
        default_processor=settings.default_processor,
    )
    app.state.submitter = RunSubmitter(
        task_client,
        default_processor=settings.default_processor,
        deadline_s=settings.create_timeout_s,
    )
    app.state.poller = PollCoordinator(
        task_client,
        default_wait_s=settings.default_wait_s,
        max_wait_s=settings.max_wait_s,
        status_probe_timeout_s=settings.status_probe_timeout_s,
        result_fetch_floor_s=settings.result_fetch_floor_s,
        result_fetch_margin_s=settings.result_fetch_margin_s,
        stuck_grace_s=settings.stuck_grace_s,
        stuck_estimates=settings.stuck_estimates,
        default_processor=settings.default_processor,
        clock=app.state.clock,
    )


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_composer(request: Request) -> MetaPromptComposer:
    return request.app.state.composer


def get_submitter(request: Request) -> RunSubmitter:
    return request.app.state.submitter


def get_poller(request: Request) -> PollCoordinator:
    return request.app.state.poller


def get_task_client(request: Request) -> ParallelClient:
    return request.app.state.task_client


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


async def research_error_handler(request: Request, exc: ResearchError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


router = APIRouter()


@router.get("/health")
async def health(settings: AppSettings = Depends(get_settings)):
    return {
        "ok": True,
        "compose_enabled": bool(settings.openrouter_api_key),
        "research_enabled": bool(settings.parallel_api_key),
    }


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be an object.")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    chat_client = request.app.state.chat_client
    chat_client.api_key = new_settings.openrouter_api_key
    chat_client.url = new_settings.openrouter_url
    chat_client.referer = new_settings.site_url
    chat_client.title = new_settings.app_title
    task_client = request.app.state.task_client
    task_client.api_key = new_settings.parallel_api_key
    task_client.base_url = new_settings.parallel_base_url.rstrip("/")
    configure_services(request.app, new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/compose")
async def compose(payload: ComposeRequest, composer: MetaPromptComposer = Depends(get_composer)):
    if not payload.prompt.strip():
        raise HTTPException(status_code=400, detail="prompt is required")
    result = await composer.compose(payload)
    return result.to_response()


@router.post("/runs", status_code=202)
async def create_run(payload: CreateRunRequest, submitter: RunSubmitter = Depends(get_submitter)):
    if not payload.company_name.strip():
        raise HTTPException(status_code=400, detail="companyName is required")
    run = await submitter.submit(payload)
    return {"runId": run.id, "status": "queued"}


@router.get("/runs")
async def poll_run(
    runId: Optional[str] = None,
    waitSec: Optional[str] = None,
    processor: Optional[str] = None,
    generation: Optional[int] = None,
    poller: PollCoordinator = Depends(get_poller),
):
    run_id = (runId or "").strip()
    if not run_id:
        raise HTTPException(status_code=400, detail="runId is required")
    outcome = await poller.poll(run_id, wait_s=waitSec, processor=processor, generation=generation)
    body = outcome.to_response()
    if outcome.terminal:
        return JSONResponse(status_code=200, content=body)
    headers = {"Retry-After": str(outcome.retry_after_seconds)}
    return JSONResponse(status_code=202, content=body, headers=headers)


@router.post("/search")
async def search(request: Request, task_client: ParallelClient = Depends(get_task_client)):
    if not task_client.enabled:
        raise HTTPException(status_code=500, detail="Parallel API key not configured")
    try:
        body = await request.json()
    except ValueError:
        body = {}
    try:
        payload = build_search_payload(body if isinstance(body, dict) else {})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    logger.info(
        "Search request processor=%s queries=%s objective=%s",
        payload["processor"],
        payload.get("search_queries", []),
        payload.get("objective", "")[:120],
    )
    reply = await task_client.search(payload, deadline_s=25.0)
    if not reply.ok:
        status = reply.status_code or 502
        return JSONResponse(
            status_code=status,
            content={"error": "Parallel search failed", "status": status, "details": reply.text or reply.error},
        )
    return reply.data


def create_app(
    settings: AppSettings,
    *,
    chat_client: Optional[OpenRouterClient] = None,
    task_client: Optional[ParallelClient] = None,
    config_path: Optional[Path] = None,
    clock: Optional[Callable[[], float]] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await app.state.chat_client.close()
            await app.state.task_client.close()

    app = FastAPI(title="Hugin Research Orchestrator", lifespan=lifespan)
    app.state.chat_client = chat_client or OpenRouterClient(
        settings.openrouter_api_key,
        url=settings.openrouter_url,
        referer=settings.site_url,
        title=settings.app_title,
    )
    app.state.task_client = task_client or ParallelClient(settings.parallel_api_key, settings.parallel_base_url)
    app.state.config_path = config_path or CONFIG_PATH
    app.state.clock = clock or time.time
    configure_services(app, settings)
    app.add_exception_handler(ResearchError, research_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("HUGIN_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "hugin.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
