"""Request- and search-scoped identifiers using ContextVars."""

from contextvars import ContextVar
from typing import Optional


# Public ContextVars (names are stable API)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
search_id_var: ContextVar[Optional[str]] = ContextVar("search_id", default=None)


def clear_context() -> None:
    """Reset context variables to defaults."""
    request_id_var.set(None)
    search_id_var.set(None)
