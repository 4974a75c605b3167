"""Console logging for the agent.

Records emitted by drivers carry ``component`` and ``driver`` attributes
(see ``OrchestratorDriver._log``); other records get empty defaults so one
format string fits all.
"""

from __future__ import annotations

import logging

FORMAT = "%(asctime)s %(levelname)s %(name)s%(context)s - %(message)s"


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        driver = getattr(record, "driver", None)
        record.context = f" [{driver}]" if driver else ""
        return True


def setup_logging(level: str | int = "INFO") -> logging.Logger:
    """Configure the root logger once; later calls only change the level."""
    root = logging.getLogger()
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(level)

    if not any(getattr(h, "_edgeorch", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(FORMAT))
        handler.addFilter(_ContextFilter())
        handler._edgeorch = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # Chatty third-party loggers.
    for name in ("httpx", "httpcore", "urllib3", "docker"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return root
