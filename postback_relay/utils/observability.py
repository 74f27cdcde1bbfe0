"""Request correlation ids.

Gateways and operators may send their own ``X-Request-ID``; it is reused when it
is a short token, otherwise a fresh one is generated. The id ends up in logs,
the response header and operator alerts.
"""
from __future__ import annotations
import re
import uuid
from typing import Mapping

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def ensure_request_id(headers: Mapping[str, str]) -> str:
    supplied = (headers.get(REQUEST_ID_HEADER) or "").strip()
    if supplied and _REQUEST_ID_PATTERN.match(supplied):
        return supplied
    return new_request_id()


__all__ = ["ensure_request_id", "new_request_id", "REQUEST_ID_HEADER"]
