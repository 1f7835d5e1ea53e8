from __future__ import annotations

import re
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

MAX_CORRELATION_ID_LENGTH = 128
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]+$")

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def resolve_correlation_id(candidate: str | None) -> str:
    """Keep a caller-supplied id when it is short and header-safe, otherwise mint a new one."""
    if candidate:
        candidate = candidate.strip()
        if len(candidate) <= MAX_CORRELATION_ID_LENGTH and _CORRELATION_ID_RE.match(candidate):
            return candidate
    return str(uuid.uuid4())


@contextmanager
def correlation_scope(value: str | None) -> Iterator[str | None]:
    token = correlation_id_var.set(value)
    try:
        yield value
    finally:
        correlation_id_var.reset(token)
