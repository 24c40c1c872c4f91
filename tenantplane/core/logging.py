from __future__ import annotations

import logging

from tenantplane.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once; repeated app factory calls must not stack handlers.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # botocore is chatty at INFO; keep it at WARNING unless debugging.
    logging.getLogger("botocore").setLevel(max(logging.WARNING, root.level))
    _configured = True
