from __future__ import annotations

import argparse
import logging
import os
import uuid

import uvicorn

from orchestrator.api.http_app import SERVICE_NAME, build_app
from orchestrator.logging_setup import configure_logging
from orchestrator.services.bootstrap import build_runtime_container

DEFAULT_PORT = 8000


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Transaction orchestrator entrypoint")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate startup wiring and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable code reload (dev mode)",
    )
    return parser.parse_args(argv)


def create_runtime_app() -> object:
    run_id = str(uuid.uuid4())
    configure_logging()
    return build_app(run_id=run_id, container=build_runtime_container())


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")

    logger.info(
        "runtime initialized",
        extra={"service": SERVICE_NAME, "run_id": run_id},
    )

    container = build_runtime_container()

    if args.dry_run_startup:
        logger.info(
            "dry-run startup complete",
            extra={
                "service": SERVICE_NAME,
                "run_id": run_id,
                "detail": type(container.gateway).__name__,
            },
        )
        return 0

    port = args.port if args.port is not None else int(os.getenv("APP_PORT", DEFAULT_PORT))
    if args.reload:
        uvicorn.run(
            "orchestrator.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
    else:
        app = build_app(run_id=run_id, container=container)
        uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
