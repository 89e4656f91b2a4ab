"""HTTP trigger and progress endpoints for batch test runs.

Routes:
- POST /batches                 create a pending batch
- POST /batches/run             start a pending batch in the background
- GET  /batches/{id}            batch progress (polled by the dashboard)
- POST /batches/{id}/cancel     stop at the next checkpoint
- POST /batches/{id}/pause      hold before the next test
- POST /batches/{id}/resume
- POST /tests/{id}/refresh      one-shot status refresh for a running test
- GET  /health
"""
from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from config import AppConfig, load_config
from exceptions import (
    BatchConflictError,
    BatchOwnershipError,
    BatchRunnerError,
    InvalidBatchStateError,
    NotFoundError,
)
from remote_client import RemoteTaskClient
from service import BatchService
from store import BatchStore, SqlStore

logger = logging.getLogger("batch_server")
LOG_FILE = Path(__file__).with_name("batch_server.log")


def _test_to_dict(test: Any) -> dict[str, Any]:
    return {
        "id": test.id,
        "projectId": test.project_id,
        "status": test.status.value,
        "taskId": test.task_id,
        "lastRunAt": test.last_run_at.isoformat() if test.last_run_at else None,
        "executionTimeMs": test.execution_time_ms,
        "resultSummary": test.result_summary,
        "resultReasoning": test.result_reasoning,
        "stepCount": test.step_count,
        "estimatedCost": test.estimated_cost,
    }


async def _json_object(request: Request) -> dict[str, Any]:
    body = await request.json()
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


async def _handle_bad_request(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _handle_not_found(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=404)


async def _handle_forbidden(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": exc.message if isinstance(exc, BatchRunnerError) else str(exc)}, status_code=403)


async def _handle_conflict(request: Request, exc: Exception) -> JSONResponse:
    payload: dict[str, Any] = {"error": exc.message if isinstance(exc, BatchRunnerError) else str(exc)}
    if isinstance(exc, BatchConflictError) and exc.running_batch_id:
        payload["runningBatchId"] = exc.running_batch_id
    return JSONResponse(payload, status_code=409)


async def _handle_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Request failed: %s %s", request.method, request.url.path)
    return JSONResponse({"error": str(exc)}, status_code=500)


def create_app(
    config: AppConfig,
    store: Optional[BatchStore] = None,
    client: Optional[RemoteTaskClient] = None,
) -> Starlette:
    """Build the Starlette app; store and client default to the configured ones."""
    store = store or SqlStore(config.store.database_url, echo=config.store.echo_sql)
    client = client or RemoteTaskClient(config.remote)
    service = BatchService(store, client, config)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await store.init()
        interrupted = await service.reconcile_orphaned_batches()
        if interrupted:
            logger.warning("Startup reconciliation interrupted %d batch(es)", len(interrupted))
        try:
            yield
        finally:
            await service.queue.shutdown()
            await client.close()
            await store.close()

    async def create_batch(request: Request) -> JSONResponse:
        body = await _json_object(request)
        batch = await service.create_batch(
            test_ids=body.get("testIds") or [],
            owner_id=body.get("userId") or "",
            batch_id=body.get("batchId"),
        )
        return JSONResponse(batch.to_dict(), status_code=201)

    async def run_batch(request: Request) -> JSONResponse:
        body = await _json_object(request)
        logger.info("Batch trigger: %s", body.get("batchId"))
        payload = await service.start_batch(
            batch_id=body.get("batchId"),
            test_ids=body.get("testIds") or [],
            user_id=body.get("userId"),
            delay_seconds=body.get("batchDelaySeconds"),
        )
        return JSONResponse(payload)

    async def get_batch(request: Request) -> JSONResponse:
        batch = await service.get_progress(request.path_params["batch_id"])
        return JSONResponse(batch.to_dict())

    async def cancel_batch(request: Request) -> JSONResponse:
        batch = await service.cancel_batch(request.path_params["batch_id"])
        return JSONResponse({"success": True, "batch": batch.to_dict()})

    async def pause_batch(request: Request) -> JSONResponse:
        batch = await service.pause_batch(request.path_params["batch_id"])
        return JSONResponse({"success": True, "batch": batch.to_dict()})

    async def resume_batch(request: Request) -> JSONResponse:
        batch = await service.resume_batch(request.path_params["batch_id"])
        return JSONResponse({"success": True, "batch": batch.to_dict()})

    async def refresh_test(request: Request) -> JSONResponse:
        test = await service.refresh_test(request.path_params["test_id"])
        return JSONResponse(_test_to_dict(test))

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "activeBatches": service.queue.active_batch_ids()})

    routes = [
        Route("/health", endpoint=health, methods=["GET"]),
        Route("/batches", endpoint=create_batch, methods=["POST"]),
        Route("/batches/run", endpoint=run_batch, methods=["POST"]),
        Route("/batches/{batch_id}", endpoint=get_batch, methods=["GET"]),
        Route("/batches/{batch_id}/cancel", endpoint=cancel_batch, methods=["POST"]),
        Route("/batches/{batch_id}/pause", endpoint=pause_batch, methods=["POST"]),
        Route("/batches/{batch_id}/resume", endpoint=resume_batch, methods=["POST"]),
        Route("/tests/{test_id}/refresh", endpoint=refresh_test, methods=["POST"]),
    ]

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            ValueError: _handle_bad_request,
            NotFoundError: _handle_not_found,
            BatchOwnershipError: _handle_forbidden,
            BatchConflictError: _handle_conflict,
            InvalidBatchStateError: _handle_conflict,
            Exception: _handle_error,
        },
    )
    app.state.service = service
    return app


def _setup_logging(verbose: bool) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    try:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=3, encoding="utf-8"))
    except OSError:
        logger.exception("Failed to set up file logging")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    parser = argparse.ArgumentParser(description="Batch test runner HTTP server")
    parser.add_argument("--config", help="Path to config file (default: config.json if exists)")
    parser.add_argument("--host", help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Bind port (default: 8765)")
    parser.add_argument("--database-url", help="SQLAlchemy async database URL")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    config = load_config(
        Path(args.config) if args.config else None,
        {
            "host": args.host,
            "port": args.port,
            "database_url": args.database_url,
            "verbose": args.verbose or None,
        },
    )
    _setup_logging(config.verbose)

    if not config.remote.api_key:
        logger.warning("BROWSER_USE_API_KEY is not configured; task creation will be rejected")

    app = create_app(config)
    logger.info("HTTP server listening on http://%s:%s", config.server.host, config.server.port)
    try:
        uvicorn.run(app, host=config.server.host, port=config.server.port, log_level="info")
    except Exception:
        logger.exception("Batch server crashed")
        raise


if __name__ == "__main__":
    main()
