from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional, Sequence

ContextGetter = Callable[[], Mapping[str, Optional[str]]]


class _ContextFilter(logging.Filter):
    def __init__(self, fields: Sequence[str], context_getter: Optional[ContextGetter] = None) -> None:
        super().__init__()
        self._fields = tuple(fields)
        self._getter = context_getter

    def filter(self, record: logging.LogRecord) -> bool:
        # Inject defaults so formatters can always reference these fields.
        values: Mapping[str, Optional[str]] = {}
        if self._getter is not None:
            try:
                values = self._getter() or {}
            except Exception:
                values = {}
        for field in self._fields:
            setattr(record, field, values.get(field))
        return True


def configure_logging(
    *,
    level: str = "INFO",
    fields: Sequence[str] = ("request_id", "agent_id", "channel_id"),
    context_getter: Optional[ContextGetter] = None,
) -> None:
    """Configure root logging so every record carries the bound context fields."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    # If something already configured handlers (uvicorn), avoid duplicating them.
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(lvl)
        root.addHandler(handler)

    ctx_filter = _ContextFilter(fields, context_getter)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s "
        + " ".join(f"{name}=%({name})s" for name in fields)
        + " %(message)s"
    )
    for handler in root.handlers:
        if not any(isinstance(f, _ContextFilter) for f in handler.filters):
            handler.addFilter(ctx_filter)
        if handler.formatter is None:
            handler.setFormatter(formatter)
