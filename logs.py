import logging
import os

from tenant import UserContextFilter

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_FORMAT = "%(asctime)s %(levelname)s [uid=%(uid)s] %(name)s: %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    root = logging.getLogger()
    root.setLevel((level or LOG_LEVEL).upper())
    if _configured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(UserContextFilter())
    root.addHandler(handler)
    _configured = True
