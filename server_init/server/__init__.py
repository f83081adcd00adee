"""Registrar HTTP server (Starlette + uvicorn)."""

from server_init.server.app import create_app, serve

__all__ = ["create_app", "serve"]
