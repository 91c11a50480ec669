from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach a stream handler to the ``goalflow`` logger once."""
    root = logging.getLogger("goalflow")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if any(getattr(h, "_goalflow", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._goalflow = True  # type: ignore[attr-defined]
    root.addHandler(handler)
