from __future__ import annotations

import logging

from medguard.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one root handler; repeated app factories must not duplicate output.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # Keep SQL echo and access logs out of audit-relevant output unless debugging.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
