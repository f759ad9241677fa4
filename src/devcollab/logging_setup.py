"""Console logging for the devcollab server."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO) -> None:
    """Configure the root logger with a single console handler.

    Safe to call multiple times; the level is updated but no handler is
    added twice.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    handler = next(
        (h for h in root.handlers if getattr(h, "_devcollab", False)),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._devcollab = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    handler.setLevel(level)

    # Quiet noisy libraries unless debugging
    noisy_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for noisy in ("httpx", "httpcore", "websockets", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(noisy_level)
