"""Process-level logging setup. Library modules only call logging.getLogger."""

from __future__ import annotations

import logging
import sys

from recallkv.config import Config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: Config | None = None) -> None:
    cfg = config or Config()
    level = getattr(logging, (cfg.log_level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
