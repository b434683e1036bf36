"""
Uvicorn launcher for StealthMax services.

Usage:
  python -m stealthmax_services.main [--host 0.0.0.0] [--port 3000]
                                     [--reload] [--log-level info]

Environment overrides (if flags not provided):
  HOST, PORT, RELOAD, LOG_LEVEL
"""

from __future__ import annotations

import argparse
import os
from typing import Optional

import uvicorn

from .config import load_config
from .logging import setup_logging


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "y", "on")


def main(argv: Optional[list[str]] = None) -> None:
    cfg = load_config()

    parser = argparse.ArgumentParser(description="Run StealthMax substream services (uvicorn)")
    parser.add_argument("--host", default=cfg.host, help="Bind address (default: %(default)s)")
    parser.add_argument("--port", type=int, default=cfg.port, help="Port (default: %(default)s)")
    parser.add_argument("--reload", action="store_true", default=_env_bool("RELOAD", False), help="Enable autoreload (dev only)")
    parser.add_argument("--log-level", default=cfg.log_level.lower(), help="Log level (default: %(default)s)")
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level.upper(), log_format=cfg.log_format)

    # one worker: the chain watcher must not run twice against the same registry
    uvicorn.run(
        "stealthmax_services.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        reload=args.reload,
        log_config=None,
    )


if __name__ == "__main__":
    main()
