"""
Logging setup

Modules log through ``logging.getLogger(__name__)`` with a bracketed tag
(``[CREDITS]``, ``[WEBHOOK]``, ...). This module wires the root handler once
at application or CLI start-up.
"""

import logging

from rich.logging import RichHandler

from credit_ledger.core.conf import settings

_configured = False

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ('httpx', 'httpcore', 'sqlalchemy.engine.Engine', 'aiosqlite')


def setup_logging(level: str | None = None) -> None:
    """Install the root log handler. Safe to call more than once."""
    global _configured
    if _configured:
        return

    log_level = (level or settings.LOG_LEVEL).upper()

    if settings.LOG_RICH:
        handler: logging.Handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter('%(name)s - %(message)s'))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(settings.LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
