"""HTTP service in front of the Scheduler.

Endpoints:
    POST /                    Run code: {content, language, stdin?, timeout?}
    GET  /health              Liveness probe
    GET  /languages           Enabled languages
    GET  /executions/{id}     Handle state (and result once finished)
    DELETE /executions/{id}   Cancel a queued or running execution

The app owns one Scheduler for its lifetime (lifespan); request handlers
never touch the sandbox directly.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from exec_broker._logging import get_logger
from exec_broker.constants import MAX_CODE_SIZE
from exec_broker.exceptions import (
    AdmissionRejectedError,
    ExecutionNotFoundError,
    InputValidationError,
    SchedulerClosedError,
    UnsupportedLanguageError,
)
from exec_broker.models import ExecutionResult, OutcomeKind
from exec_broker.registry import RunnerRegistry
from exec_broker.scheduler import Scheduler
from exec_broker.settings import Settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from exec_broker.config import BrokerConfig

logger = get_logger(__name__)

HTML_ECHO_MESSAGE = "HTML content received."

# Caller-facing titles for program-level failures (all reported as 400)
_FAILURE_TITLES: dict[OutcomeKind, str] = {
    OutcomeKind.COMPILE_ERROR: "Compilation Error",
    OutcomeKind.RUNTIME_ERROR: "Runtime Error",
    OutcomeKind.TIMEOUT: "Time Limit Exceeded",
    OutcomeKind.RESOURCE_EXCEEDED: "Resource Limit Exceeded",
    OutcomeKind.CANCELLED: "Execution Cancelled",
}


class RunBody(BaseModel):
    """Body of POST /. Missing fields are reported as 400, not 422."""

    content: str | None = None
    language: str | None = None
    stdin: str | None = None
    timeout: float | None = None


def create_app(
    config: BrokerConfig | None = None,
    settings: Settings | None = None,
    *,
    registry: RunnerRegistry | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    Args:
        config: Broker configuration (default: settings.to_config())
        settings: Environment settings (default: read from EXEC_BROKER_* variables)
        registry: Language registry (default: built-in languages minus disabled ones)
    """
    settings = settings or Settings()
    config = config or settings.to_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with Scheduler(config, registry=registry) as scheduler:
            app.state.scheduler = scheduler
            yield

    app = FastAPI(title="exec-broker", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/")
    async def run_code(request: Request) -> JSONResponse:
        scheduler: Scheduler = request.app.state.scheduler
        try:
            body = RunBody.model_validate(await request.json())
        except (json.JSONDecodeError, ValidationError):
            return _error(400, "Invalid request body.")

        if not body.content or not body.language:
            return _error(400, "Missing required fields: content and language.")
        try:
            content_size = len(body.content.encode("utf-8"))
        except UnicodeEncodeError:
            return _error(400, "Content is not valid UTF-8 text.")
        if content_size > MAX_CODE_SIZE:
            return _error(413, f"Content exceeds {MAX_CODE_SIZE} bytes.")

        descriptor = scheduler.registry.lookup(body.language)
        if descriptor is None or not descriptor.enabled:
            return _error(400, "Unsupported language.")
        if descriptor.is_markup:
            return JSONResponse({"stdout": HTML_ECHO_MESSAGE, "stderr": "", "html": body.content})

        try:
            result = await scheduler.run(
                body.content,
                body.language,
                stdin=body.stdin,
                timeout_seconds=body.timeout,
            )
        except UnsupportedLanguageError:
            return _error(400, "Unsupported language.")
        except InputValidationError as e:
            return _error(400, e.message)
        except ValidationError as e:
            return _error(400, "Invalid request body.", details=str(e))
        except AdmissionRejectedError as e:
            logger.warning("Request rejected at admission", extra={"language": body.language, **e.context})
            return _error(503, "Server busy", kind="admission_rejected")
        except SchedulerClosedError:
            return _error(503, "Server shutting down", kind="admission_rejected")

        return _result_response(result)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "message": "Service is healthy."}

    @app.get("/languages")
    async def languages(request: Request) -> dict[str, Any]:
        enabled = request.app.state.scheduler.registry
        return {
            "languages": [
                {"identifier": ident, "kind": enabled.descriptors[ident].kind.value} for ident in enabled.identifiers()
            ]
        }

    @app.get("/executions/{execution_id}")
    async def execution_status(execution_id: str, request: Request) -> JSONResponse:
        scheduler: Scheduler = request.app.state.scheduler
        try:
            handle = scheduler.get(execution_id)
        except ExecutionNotFoundError:
            return _error(404, "Execution not found.")
        payload: dict[str, Any] = {
            "execution_id": handle.id,
            "language": handle.descriptor.identifier,
            "state": handle.state.value,
            "pid": handle.pid,
        }
        if handle.done:
            payload["result"] = (await handle.result()).model_dump(mode="json")
        return JSONResponse(payload)

    @app.delete("/executions/{execution_id}")
    async def cancel_execution(execution_id: str, request: Request) -> JSONResponse:
        scheduler: Scheduler = request.app.state.scheduler
        try:
            scheduler.status(execution_id)
        except ExecutionNotFoundError:
            return _error(404, "Execution not found.")
        return JSONResponse({"execution_id": execution_id, "cancelled": scheduler.cancel(execution_id)})

    return app


def _result_response(result: ExecutionResult) -> JSONResponse:
    if result.outcome is OutcomeKind.SUCCESS:
        payload: dict[str, Any] = {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "execution_id": result.execution_id,
            "outcome": result.outcome.value,
            "stdout_truncated": result.stdout_truncated,
            "stderr_truncated": result.stderr_truncated,
        }
        if result.warnings:
            payload["warnings"] = result.warnings
        return JSONResponse(payload)

    if result.outcome is OutcomeKind.INTERNAL_ERROR:
        return JSONResponse(
            {
                "error": "Internal server error",
                "kind": result.outcome.value,
                "details": result.diagnostic,
                "execution_id": result.execution_id,
            },
            status_code=500,
        )

    return JSONResponse(
        {
            "error": _FAILURE_TITLES[result.outcome],
            "kind": result.outcome.value,
            "details": result.diagnostic,
            "execution_id": result.execution_id,
        },
        status_code=400,
    )


def _error(status_code: int, message: str, *, kind: str | None = None, details: str | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": message}
    if kind is not None:
        payload["kind"] = kind
    if details is not None:
        payload["details"] = details
    return JSONResponse(payload, status_code=status_code)
