"""Crucible backend server.

Mounts the Crucible router under a FastAPI application. The pipeline
is built from environment variables at startup; if the configuration
is unusable the router is left unmounted and the health endpoint
reports the error.

Usage::

    # Development (auto-reload)
    uvicorn crucible_server:app --reload --port 8430

    # Production
    uvicorn crucible_server:app --host 0.0.0.0 --port 8430

    # Or run directly
    python crucible_server.py
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logger = logging.getLogger("crucible")

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Crucible API",
    description=(
        "Fine-tuning data pipeline: batches labeled examples, submits "
        "training jobs, and tracks them to completion."
    ),
    version="0.1.0",
)

# ---------------------------------------------------------------------------
# CORS -- allow local dashboard origins
# ---------------------------------------------------------------------------

_ALLOWED_ORIGINS = [
    "http://localhost:5173",   # Vite dev server
    "http://localhost:8430",   # Self (for Swagger UI)
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8430",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_status: dict[str, Any] = {"loaded": False, "error": None}


def _mount_crucible() -> None:
    """Build the pipeline from the environment and mount the router at ``/api/crucible/``."""
    try:
        from crucible.src.server import init_crucible, router as crucible_router

        init_crucible()
        app.include_router(crucible_router, prefix="/api/crucible", tags=["crucible"])
        _status["loaded"] = True
        _status["error"] = None
        logger.info("Crucible router mounted at /api/crucible/")
    except Exception as exc:
        _status["error"] = str(exc)
        logger.warning("Crucible router failed to load: %s", exc)


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Return overall server health.

    Returns:
        Dictionary with status and the router's load state.
    """
    return {
        "status": "ok" if _status["loaded"] else "error",
        "version": "0.1.0",
        "crucible": _status,
    }


_mount_crucible()


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def run_server(host: str = "127.0.0.1", port: int = 8430) -> None:
    """Start the Crucible server via uvicorn.

    Args:
        host: Bind address. Defaults to localhost.
        port: Port number. Defaults to 8430.
    """
    import uvicorn

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    run_server()
