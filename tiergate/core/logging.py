"""Logging setup: plain or JSON lines on stdout, tagged with the calling account.

Handlers tag every record emitted while serving a request with the account
bound by :func:`bind_account`, so ledger and gateway logs can be joined per
account without passing the id through every call.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

from tiergate.core.config import settings

# Record attributes copied into JSON output when present (set via ``extra=``)
CONTEXT_FIELDS = ("account_id", "backend", "tier")

_current_account: ContextVar[str | None] = ContextVar("current_account", default=None)


def bind_account(account_id: str | None) -> None:
    _current_account.set(account_id)


class AccountContextFilter(logging.Filter):
    """Fill ``record.account_id`` from the request context unless given explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "account_id", None) is None:
            account_id = _current_account.get()
            if account_id is not None:
                record.account_id = account_id
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None})
        if record.exc_info and record.exc_info[1]:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def build_handler(json_lines: bool, level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(AccountContextFilter())
    if json_lines:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s [%(name)s] %(message)s"))
    return handler


def setup_logging() -> None:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(build_handler(settings.log_json, level))

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(level if settings.app_debug else logging.WARNING)
