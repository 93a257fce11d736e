"""Logging helpers shared by the API and the CLI."""

from __future__ import annotations

import logging
import logging.handlers
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE_NAME = "gateway.log"


def setup_logging(log_dir: str, level: int = logging.INFO) -> None:
    """Configure file and console logging on the root logger once."""
    root = logging.getLogger()
    root.setLevel(level)
    if getattr(root, "_chat_gateway_configured", False):
        return

    os.makedirs(log_dir, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    root._chat_gateway_configured = True  # type: ignore[attr-defined]
    logging.getLogger(__name__).debug("Logging configured in %s", log_dir)
