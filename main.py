"""
main.py: Server launcher and entry point.

Run this file to start the API server:

    python main.py

Interactive API docs are served at /docs.

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn app:app --reload
"""

from __future__ import annotations

import uvicorn

from backend.utils.config import get_settings


def main() -> None:
    """Start the campus allocation API server."""
    settings = get_settings()
    base_url = f"http://{settings.server_host}:{settings.server_port}"
    print("=" * 60)
    print(f"  {settings.app_name} v{settings.app_version}")
    print("=" * 60)
    print(f"  Server   : {base_url}")
    print(f"  API docs : {base_url}/docs")
    print(f"  Database : {settings.database_path}")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    uvicorn.run(
        "app:app",       # points to app.py → app object
        host=settings.server_host,
        port=settings.server_port,
        reload=True,     # hot-reload on file changes during development
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
