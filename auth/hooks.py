"""
auth/hooks.py -- Lifecycle hooks registered by the embedding application.

Two distinct tables:
  Events     -- side effects (audit log, welcome email, metrics). Return value
                is ignored. A failing event is logged and does not fail the
                operation, because the state change it reports has already
                been written.
  Callbacks  -- value shaping. Must return the (possibly modified) value.
                Failures propagate.

Hooks may be plain functions or coroutine functions.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar, Union

from auth.models import Account, AuthSession, Session, User

logger = logging.getLogger("warden.auth.hooks")

T = TypeVar("T")
_MaybeAwaitable = Union[T, Awaitable[T]]

Claims = dict[str, Any]


@dataclass(frozen=True)
class Events:
    create_user: Callable[[User], _MaybeAwaitable[None]] | None = None
    sign_in: Callable[[User, Account | None], _MaybeAwaitable[None]] | None = None
    sign_out: Callable[[Session], _MaybeAwaitable[None]] | None = None
    link_account: Callable[[User, Account], _MaybeAwaitable[None]] | None = None


@dataclass(frozen=True)
class Callbacks:
    jwt: Callable[[Claims, User], _MaybeAwaitable[Claims]] | None = None
    session: Callable[[AuthSession, Claims], _MaybeAwaitable[AuthSession]] | None = None


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def fire(events: Events, name: str, *args: Any) -> None:
    """Run the named event handler, if any. Handler errors are logged only."""
    handler = getattr(events, name)
    if handler is None:
        return
    try:
        await _call(handler, *args)
    except Exception:
        logger.exception("Event handler %r failed", name)


async def shape(callbacks: Callbacks, name: str, value: T, *args: Any) -> T:
    """Pass value through the named callback, if any, and return its result."""
    handler = getattr(callbacks, name)
    if handler is None:
        return value
    shaped = await _call(handler, value, *args)
    if shaped is None:
        raise TypeError(f"The {name!r} callback must return a value")
    return shaped
