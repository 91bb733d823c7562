"""HTTP trigger for scheduled runs.

Run and retry endpoints acknowledge immediately with "processing started"
and do the work in a background task. Every endpoint except /health is
rate limited per client address.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from sqp_orchestrator.fetcher.rate_limiter import RateLimiter
from sqp_orchestrator.models.config import OrchestratorConfig
from sqp_orchestrator.models.data_models import ReportType
from sqp_orchestrator.models.errors import NotFoundError, RateLimitExceeded
from sqp_orchestrator.pipeline.runtime import Runtime, open_runtime

API_PREFIX = "/api/v1/cron"


def create_app(
    config: OrchestratorConfig,
    runtime: Optional[Runtime] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Create the trigger application.

    Args:
        config: Loaded configuration
        runtime: Prebuilt runtime; when omitted one is opened for the app's lifetime
        rate_limiter: Limiter for incoming requests (defaults from config)

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            app.state.runtime = runtime
            yield
            return
        async with open_runtime(config) as opened:
            app.state.runtime = opened
            yield

    app = FastAPI(title="SQP Report Orchestrator", version="1.0.0", lifespan=lifespan)
    app.state.runtime = runtime
    limiter = rate_limiter or RateLimiter(config.api_rate_limit_points, config.api_rate_limit_duration)

    def _client_key(request: Request) -> str:
        return request.client.host if request.client else "unknown"

    def _limit(request: Request) -> dict:
        """Consume a slot for the caller; returns the rate limit headers."""
        key = _client_key(request)
        remaining = limiter.consume(key)
        return {
            "X-RateLimit-Limit": str(limiter.points),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(int(limiter.reset_in(key))),
        }

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        retry_after = max(int(exc.retry_after) + 1, 1)
        return JSONResponse(
            status_code=429,
            content={"success": False, "message": "Too many requests, please try again later"},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(retry_after),
            },
        )

    @app.get("/health")
    async def health():
        return {"status": "healthy", "environment": config.environment}

    @app.get(f"{API_PREFIX}/run")
    async def trigger_run(
        request: Request,
        background_tasks: BackgroundTasks,
        user_id: Optional[int] = None,
        seller_id: Optional[int] = None,
    ):
        headers = _limit(request)
        if user_id is not None and not config.is_user_allowed(user_id):
            raise HTTPException(status_code=403, detail=f"User {user_id} is not allowed in {config.environment}")

        state: Runtime = request.app.state.runtime

        async def run() -> None:
            try:
                await state.orchestrator.run_once(user_id=user_id, seller_id=seller_id)
            except Exception as e:
                state.logger.error("background_run_failed", error=str(e),
                                   user_id=user_id, seller_id=seller_id)

        background_tasks.add_task(run)
        return JSONResponse(
            {"success": True, "message": "processing started",
             "user_id": user_id, "seller_id": seller_id},
            headers=headers,
        )

    @app.get(f"{API_PREFIX}/initial-pull")
    async def trigger_initial_pull(
        request: Request,
        background_tasks: BackgroundTasks,
        user_id: Optional[int] = None,
        seller_id: Optional[int] = None,
        report_type: Optional[str] = None,
    ):
        headers = _limit(request)
        if user_id is not None and not config.is_user_allowed(user_id):
            raise HTTPException(status_code=403, detail=f"User {user_id} is not allowed in {config.environment}")
        try:
            parsed = ReportType.parse(report_type) if report_type else None
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        state: Runtime = request.app.state.runtime

        async def pull() -> None:
            try:
                await state.orchestrator.run_initial_pull(
                    user_id=user_id, seller_id=seller_id, report_type=parsed
                )
            except Exception as e:
                state.logger.error("background_initial_pull_failed", error=str(e),
                                   user_id=user_id, seller_id=seller_id)

        background_tasks.add_task(pull)
        return JSONResponse(
            {"success": True, "message": "processing started", "user_id": user_id,
             "seller_id": seller_id, "report_type": parsed.value if parsed else None},
            headers=headers,
        )

    @app.get(f"{API_PREFIX}/retry-stuck")
    async def trigger_retry_stuck(request: Request, background_tasks: BackgroundTasks):
        headers = _limit(request)
        state: Runtime = request.app.state.runtime

        async def recover() -> None:
            try:
                await state.watchdog.run_once()
            except Exception as e:
                state.logger.error("background_watchdog_failed", error=str(e))

        background_tasks.add_task(recover)
        return JSONResponse({"success": True, "message": "processing started"}, headers=headers)

    @app.get(f"{API_PREFIX}/phase/{{work_unit_id}}/{{report_type}}")
    async def phase(request: Request, work_unit_id: int, report_type: str):
        headers = _limit(request)
        try:
            parsed = ReportType.parse(report_type)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        state: Runtime = request.app.state.runtime
        try:
            task = await state.orchestrator.check_phase(work_unit_id, parsed)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

        return JSONResponse(
            {
                "work_unit_id": task.work_unit_id,
                "report_type": task.report_type.value,
                "date_range": str(task.date_range) if task.date_range else None,
                "state": task.state.value,
                "pull_status": task.pull_status.name,
                "phase_status": task.phase_status.name,
                "report_id": task.report_id,
                "document_id": task.document_id,
                "download_status": task.download_status.value if task.download_status else None,
                "retry_count": task.retry_count,
                "is_active": task.is_active,
            },
            headers=headers,
        )

    return app
