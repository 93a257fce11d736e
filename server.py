"""Command line entry point for the streaming chat gateway."""

from __future__ import annotations

import argparse
import logging
from typing import Optional

import uvicorn

from chat_gateway import GatewayConfig
from chat_gateway.api import create_app

logger = logging.getLogger(__name__)


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    defaults = GatewayConfig()
    parser = argparse.ArgumentParser(description="Run the streaming chat gateway.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument(
        "--connect_timeout", type=float, default=defaults.connect_timeout, help="Upstream connect timeout (seconds)."
    )
    parser.add_argument(
        "--inactivity_timeout",
        type=float,
        default=defaults.inactivity_timeout,
        help="Fail a session when no upstream frame arrives within this window (seconds).",
    )
    parser.add_argument(
        "--max_session_seconds",
        type=float,
        default=defaults.max_session_seconds,
        help="Upper bound on a single session's lifetime (seconds).",
    )
    parser.add_argument(
        "--check_interval",
        type=float,
        default=defaults.check_interval,
        help="How often a waiting session checks for cancellation (seconds).",
    )
    parser.add_argument("--default_model", default=defaults.default_model, help="Model used when a request names none.")
    parser.add_argument(
        "--default_provider",
        default=defaults.default_provider,
        help="Provider family used when it cannot be inferred from the endpoint.",
    )
    parser.add_argument("--max_workers", type=int, default=defaults.max_workers, help="Upstream reader threads.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    gateway_cfg = GatewayConfig(
        connect_timeout=args.connect_timeout,
        inactivity_timeout=args.inactivity_timeout,
        max_session_seconds=args.max_session_seconds,
        check_interval=args.check_interval,
        default_model=args.default_model,
        default_provider=args.default_provider,
        max_workers=args.max_workers,
    )

    app = create_app(gateway_cfg, log_dir=args.log_dir)
    logger.info("Starting chat gateway on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
