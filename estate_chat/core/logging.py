from __future__ import annotations

import logging

_NOISY_LOGGERS = ("uvicorn.error", "uvicorn.access")


def configure_logging(*, debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        force=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)
    # Per-request lines from the remote store client are only useful while debugging.
    logging.getLogger("httpx").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.debug("Logging configured level=%s", logging.getLevelName(level))
