"""Session context — which conversation the current work belongs to.

The session id rides on a ``ContextVar`` so every coroutine started inside
``run_with_session_id`` (and everything it awaits) sees the same id, while
tasks started under other ids keep their own. Outside any scope the
module-level fallback is returned, which is what startup code and tests use.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, TypeVar

DEFAULT_SESSION_ID = "default"

_T = TypeVar("_T")

_current_session: ContextVar[str | None] = ContextVar(
    "routinebot_session_id", default=None
)
_fallback_session_id: str = DEFAULT_SESSION_ID


def set_current_session_id(session_id: str) -> None:
    """Set the fallback session id (used outside any scoped context)."""
    global _fallback_session_id
    _fallback_session_id = session_id


def get_current_session_id() -> str:
    """Return the scoped session id, or the fallback when none is active."""
    scoped = _current_session.get()
    return scoped if scoped is not None else _fallback_session_id


@contextmanager
def session_scope(session_id: str) -> Iterator[str]:
    """Make ``session_id`` current for the body of a ``with`` block."""
    token = _current_session.set(session_id)
    try:
        yield session_id
    finally:
        _current_session.reset(token)


def run_with_session_id(
    session_id: str, fn: Callable[..., _T], *args: Any, **kwargs: Any
) -> _T:
    """Run ``fn`` with ``session_id`` as the current session.

    Coroutine functions (and callables returning an awaitable) get an
    awaitable back whose body runs entirely inside the scope, so the id
    survives every ``await`` in it. Nested calls shadow the outer id and
    restore it on exit.
    """
    if inspect.iscoroutinefunction(fn):
        return _await_in_scope(session_id, fn(*args, **kwargs))  # type: ignore[return-value]

    with session_scope(session_id):
        result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        return _await_in_scope(session_id, result)  # type: ignore[return-value]
    return result


async def _await_in_scope(session_id: str, awaitable: Awaitable[_T]) -> _T:
    with session_scope(session_id):
        return await awaitable
