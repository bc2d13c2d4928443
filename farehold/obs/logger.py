"""Structured JSON logging to stdout.

Low overhead, minimal dependencies, safe for production stdout collectors.
Passenger contact details are redacted before anything is written.
"""

from typing import Any, Dict
from datetime import datetime, timezone
import json

from farehold.obs.context import request_id_var, search_id_var

_PHONE_FIELDS = ("phone", "phone_number")
_EMAIL_FIELDS = ("email",)


def _redact_phone(value: Any) -> Any:
    s = str(value) if value is not None else ""
    if not s:
        return s
    digits = [c for c in s if c.isdigit()]
    if len(digits) < 4:
        return "***"
    tail = "".join(digits[-4:])
    return f"***{tail}"


def _redact_email(value: Any) -> Any:
    s = str(value) if value is not None else ""
    if "@" not in s:
        return "***" if s else s
    local, _, domain = s.partition("@")
    return f"{local[:1]}***@{domain}"


def log_event(event: str, **fields: Any) -> None:
    now = datetime.now(timezone.utc).isoformat()
    payload: Dict[str, Any] = {
        "ts": now,
        "level": fields.pop("level", "INFO"),
        "event": event,
        "request_id": request_id_var.get(),
    }
    # Attach context vars if not provided explicitly
    if "search_id" not in fields:
        payload["search_id"] = search_id_var.get()

    # Merge remaining fields
    for k, v in fields.items():
        if k in _PHONE_FIELDS:
            payload[k] = _redact_phone(v)
        elif k in _EMAIL_FIELDS:
            payload[k] = _redact_email(v)
        else:
            payload[k] = v

    try:
        print(json.dumps(payload, separators=(",", ":"), default=str))
    except (TypeError, ValueError):
        # As a last resort, avoid crashing the app due to logging
        pass
