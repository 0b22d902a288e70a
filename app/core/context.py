from __future__ import annotations
import contextvars
import uuid

_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
_client_ip: contextvars.ContextVar[str | None] = contextvars.ContextVar("client_ip", default=None)
_user_agent: contextvars.ContextVar[str | None] = contextvars.ContextVar("user_agent", default=None)

def set_request_context(request_id: str, client_ip: str | None = None, user_agent: str | None = None) -> None:
    _request_id.set(request_id)
    _client_ip.set(client_ip)
    _user_agent.set(user_agent)

def get_request_id() -> str:
    rid = _request_id.get()
    if rid is None:
        # Outside a request (jobs, tests): mint one so callers always get an id
        rid = str(uuid.uuid4())
        _request_id.set(rid)
    return rid

def get_client_ip() -> str | None:
    return _client_ip.get()

def get_user_agent() -> str | None:
    return _user_agent.get()
