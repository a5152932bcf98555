"""FastAPI server for the testexecutor API."""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Response, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import BaseModel

from testexecutor.core.service import RunnerNotStartedError

if TYPE_CHECKING:
    from testexecutor.core.results import Result
    from testexecutor.core.service import ExecutorService
    from testexecutor.models import ApiConfig, TimeOptions

# Global service reference (set by the daemon)
_service: "ExecutorService | None" = None
_api_config: "ApiConfig | None" = None


def set_service(service: "ExecutorService", api_config: "ApiConfig | None" = None) -> None:
    """Set the global service reference."""
    global _service, _api_config
    _service = service
    _api_config = api_config


def get_service() -> "ExecutorService":
    """Get the service instance."""
    if _service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _service


# Security
security = HTTPBearer(auto_error=False)


async def verify_token(
    credentials: HTTPAuthorizationCredentials | None = Security(security),
) -> bool:
    """Verify the API token if authentication is enabled."""
    if _api_config is None or not _api_config.auth.enabled:
        return True

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    if credentials.credentials != _api_config.auth.token:
        raise HTTPException(status_code=401, detail="Invalid token")

    return True


# Response Models
class HealthResponse(BaseModel):
    status: str
    version: str
    async_runner: bool = False
    paused: bool | None = None
    next_run: str | None = None
    running_executions: int = 0


class RunnerStateResponse(BaseModel):
    paused: bool
    state: str
    next_run: str | None = None


class StatusResponse(RunnerStateResponse):
    command: str
    last_result: dict


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def render_body(body: Any) -> str:
    """Render a result body as response text."""
    if body is None:
        return ""
    if isinstance(body, (dict, list)):
        return json.dumps(body)
    return str(body)


def result_response(service: "ExecutorService", result: "Result", headers: dict[str, str] | None = None) -> Response:
    """Map a result onto an HTTP response: 200 if successful, 503 otherwise."""
    return Response(
        content=render_body(result.body),
        status_code=200 if result.successful else 503,
        media_type=service.content_type_for(result),
        headers=headers,
    )


def _runner_state(service: "ExecutorService") -> RunnerStateResponse:
    runner = service.async_runner
    return RunnerStateResponse(
        paused=runner.is_paused,
        state=runner.state.value,
        next_run=_iso(runner.next_run),
    )


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="testexecutor API",
        description="Runs a test command and serves its results",
        version="0.1.0",
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Get daemon health status."""
        from testexecutor import __version__

        service = get_service()
        runner = service.async_runner

        return HealthResponse(
            status="healthy",
            version=__version__,
            async_runner=runner is not None,
            paused=runner.is_paused if runner else None,
            next_run=_iso(runner.next_run) if runner else None,
            running_executions=service.executor.running_count,
        )

    @app.get("/api/v1/execute")
    async def execute(_auth: bool = Depends(verify_token)):
        """Run the command now and return its result."""
        service = get_service()
        result = await service.execute()
        return result_response(service, result)

    @app.get("/api/v1/results")
    async def results(_auth: bool = Depends(verify_token)):
        """Get the result of the last background run."""
        service = get_service()
        try:
            result = service.get_last_result()
        except RunnerNotStartedError as e:
            raise HTTPException(status_code=503, detail=str(e))

        headers = {
            "X-test-start": _iso(result.start_time) or "",
            "X-test-end": _iso(result.end_time) or "",
        }
        return result_response(service, result, headers=headers)

    @app.get("/api/v1/status", response_model=StatusResponse)
    async def status(_auth: bool = Depends(verify_token)):
        """Get the runner state and the last result as JSON."""
        service = get_service()
        try:
            result = service.get_last_result()
        except RunnerNotStartedError as e:
            raise HTTPException(status_code=503, detail=str(e))

        state = _runner_state(service)
        return StatusResponse(
            **state.model_dump(),
            command=service.command,
            last_result=result.to_dict(),
        )

    @app.post("/api/v1/pause", response_model=RunnerStateResponse)
    async def pause(
        duration: float | None = Query(None, ge=0, description="Pause duration in seconds"),
        _auth: bool = Depends(verify_token),
    ):
        """Pause the background runs, aborting the current one."""
        service = get_service()
        try:
            service.pause_async_runner(duration)
        except RunnerNotStartedError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return _runner_state(service)

    @app.post("/api/v1/resume", response_model=RunnerStateResponse)
    async def resume(_auth: bool = Depends(verify_token)):
        """Resume paused background runs immediately."""
        service = get_service()
        try:
            service.resume_async_runner()
        except RunnerNotStartedError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return _runner_state(service)

    return app


async def run_server(
    service: "ExecutorService",
    host: str = "127.0.0.1",
    port: int = 9877,
    time_options: "TimeOptions | None" = None,
    api_config: "ApiConfig | None" = None,
) -> None:
    """Run the API server, with the async runner if time options are given."""
    import uvicorn

    set_service(service, api_config)
    app = create_app()

    if time_options is not None:
        service.start_async_runner(time_options)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",  # Reduce uvicorn noise
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    finally:
        service.stop()
        logger.info("API server stopped")
