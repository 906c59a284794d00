"""
turntrader Infrastructure: Logging

Plain-text console/file logging plus an optional JSON-lines log whose records
carry the symbol, run number and turn that produced them.
"""

import contextvars
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

_CONTEXT_FIELDS = ("symbol", "run", "turn")

_context_vars: Dict[str, contextvars.ContextVar] = {
    name: contextvars.ContextVar(f"log_{name}", default=None) for name in _CONTEXT_FIELDS
}

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_log_context() -> Dict[str, Any]:
    """Current symbol/run/turn values (unset fields omitted)."""
    context = {}
    for name, var in _context_vars.items():
        value = var.get()
        if value is not None:
            context[name] = value
    return context


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Attach symbol/run/turn to every record logged inside the block.

    Usage:
        with log_context(symbol="BTCUSDC", run=12):
            ...
    """
    tokens = []
    for name, value in fields.items():
        if name not in _context_vars:
            raise ValueError(f"Unknown log context field: {name}")
        tokens.append((_context_vars[name], _context_vars[name].set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record with the active log context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        entry.update(get_log_context())
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(level: str = "INFO", log_file: Optional[str] = "logs/turntrader.log",
                      json_log_file: Optional[str] = None) -> None:
    """Configure root logging with console, text file and optional JSON-lines handlers."""
    handlers: list = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    if json_log_file:
        Path(json_log_file).parent.mkdir(parents=True, exist_ok=True)
        json_handler = logging.FileHandler(json_log_file)
        json_handler.setFormatter(JsonLogFormatter())
        handlers.append(json_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=PLAIN_FORMAT,
        handlers=handlers,
        force=True,
    )
