from __future__ import annotations

import re
import uuid
from contextvars import ContextVar

_request_id: ContextVar[str] = ContextVar("_request_id", default="-")

_INBOUND_ID_RE = re.compile(r"^[A-Za-z0-9._-]{6,64}$")

def new_request_id() -> str:
    rid = uuid.uuid4().hex[:12]
    _request_id.set(rid)
    return rid

def bind_request_id(inbound: str | None) -> str:
    """Adopt a well-formed inbound X-Request-Id, otherwise mint a fresh one."""
    if inbound and _INBOUND_ID_RE.match(inbound):
        _request_id.set(inbound)
        return inbound
    return new_request_id()

def get_request_id() -> str:
    return _request_id.get()
