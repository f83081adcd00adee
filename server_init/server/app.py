"""HTTP surface of the registrar.

A single ``POST /`` endpoint accepts registrations; ``GET /health`` reports
liveness. Registrations run on the thread pool so git and SQLite I/O never
block the event loop, and the response carries only a status code.
"""

from pathlib import Path
from typing import Optional

import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from server_init.cluster.orchestrator import RegistrationOrchestrator

logger = structlog.get_logger(__name__)

MAX_BODY_BYTES = 1024 * 1024


async def _read_capped(request: Request) -> Optional[bytes]:
    """Read the request body, or None once it exceeds ``MAX_BODY_BYTES``."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > MAX_BODY_BYTES:
        await logger.awarning("registration_body_too_large", size=int(declared))
        return None

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > MAX_BODY_BYTES:
            await logger.awarning("registration_body_too_large", size=len(body))
            return None
    return bytes(body)


def create_app(orchestrator: RegistrationOrchestrator) -> Starlette:
    """Build the Starlette application around an orchestrator."""

    async def register(request: Request) -> Response:
        """Handle one node registration."""
        body = await _read_capped(request)
        if body is None:
            return Response(status_code=400)
        outcome = await run_in_threadpool(orchestrator.handle, body)
        return Response(status_code=outcome.status_code)

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    return Starlette(
        routes=[
            Route("/", register, methods=["POST"]),
            Route("/health", health, methods=["GET"]),
        ],
    )


def serve(
    orchestrator: RegistrationOrchestrator,
    host: str = "127.0.0.1",
    port: int = 8080,
    ssl_certfile: Optional[Path] = None,
    ssl_keyfile: Optional[Path] = None,
) -> None:
    """Run the registrar until interrupted."""
    logger.info(
        "registrar_starting",
        host=host,
        port=port,
        tls=ssl_certfile is not None,
        auth_enabled=orchestrator.auth_enabled,
    )
    config = uvicorn.Config(
        app=create_app(orchestrator),
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
        ssl_certfile=str(ssl_certfile) if ssl_certfile else None,
        ssl_keyfile=str(ssl_keyfile) if ssl_keyfile else None,
    )
    uvicorn.Server(config).run()
