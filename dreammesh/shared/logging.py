from __future__ import annotations

import logging
import os

# Third-party loggers that flood DEBUG output during renders and LLM calls.
_NOISY_LOGGERS = ("trimesh", "httpx", "httpcore", "anthropic", "google_genai")


def configure_logging(default_level: str = "INFO") -> None:
    level_name = os.getenv("LOG_LEVEL", default_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
