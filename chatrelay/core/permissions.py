"""PermissionBroker: correlation table for out-of-band tool approvals.

A tool call the engine wants to make is turned into a pending entry, delivered
to the user through an injected notifier, and awaited. The entry is settled
by exactly one of: an explicit ``resolve_permission``, its timeout firing, or
``cancel_pending_for_chat``. All three go through the same atomic
take-and-delete, so whichever runs first wins and the others are no-ops.
"""

from __future__ import annotations

import asyncio
import logging
import random
import string
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .events import ChatId

logger = logging.getLogger(__name__)

# (chat_id, permission_id, tool_name, tool_input) -> delivered
PermissionNotifier = Callable[[ChatId, str, str, dict[str, Any]], Awaitable[None]]

DEFAULT_PERMISSION_TIMEOUT = 60.0

_ID_ALPHABET = string.digits + string.ascii_lowercase


@dataclass
class PermissionResponse:
    """A user's decision on a tool call."""

    allowed: bool
    always_allow: bool = False
    message: str | None = None


@dataclass
class PendingPermission:
    """A tool call waiting for a decision."""

    id: str
    chat_id: ChatId
    tool_name: str
    tool_input: dict[str, Any]
    future: asyncio.Future[PermissionResponse] = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    timeout_handle: asyncio.TimerHandle | None = field(default=None, repr=False)
    resolved: bool = False


def generate_permission_id() -> str:
    """Return an id like ``perm_1718000000000_k3j9x2a``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"perm_{int(time.time() * 1000)}_{suffix}"


class PermissionBroker:
    """Turns asynchronous, possibly-never-arriving approvals into awaitables.

    Lookup tables are owned by the instance: pending entries keyed by
    permission id, and a per-chat set of tools the user chose to always allow.

    The take-and-delete gate is guarded by a ``threading.Lock`` so that a
    transport resolving from another thread cannot race a timeout on the
    event loop. Futures are always settled on their own loop.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_PERMISSION_TIMEOUT,
        notifier: PermissionNotifier | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self._notifier = notifier
        self._pending: dict[str, PendingPermission] = {}
        self._always_allowed: dict[ChatId, set[str]] = {}
        self._lock = threading.Lock()
        self._notify_tasks: set[asyncio.Task[None]] = set()

    def set_notifier(self, notifier: PermissionNotifier | None) -> None:
        """Set the callback that delivers requests to the user."""
        self._notifier = notifier

    # --- Always-allow set ---

    def is_tool_always_allowed(self, chat_id: ChatId, tool_name: str) -> bool:
        return tool_name in self._always_allowed.get(chat_id, ())

    def set_tool_always_allowed(self, chat_id: ChatId, tool_name: str) -> None:
        self._always_allowed.setdefault(chat_id, set()).add(tool_name)
        logger.info("Tool marked as always allowed: chat=%s tool=%s", chat_id, tool_name)

    def clear_always_allowed(self, chat_id: ChatId) -> None:
        self._always_allowed.pop(chat_id, None)
        logger.debug("Always allowed tools cleared: chat=%s", chat_id)

    # --- Requests ---

    async def request_permission(
        self, chat_id: ChatId, tool_name: str, tool_input: dict[str, Any]
    ) -> PermissionResponse:
        """Ask the user whether ``tool_name`` may run; never raises on denial."""
        if self.is_tool_always_allowed(chat_id, tool_name):
            logger.debug("Tool auto-allowed: chat=%s tool=%s", chat_id, tool_name)
            return PermissionResponse(allowed=True)

        notifier = self._notifier
        if notifier is None:
            logger.warning("No permission notifier set, auto-denying %s", tool_name)
            return PermissionResponse(allowed=False, message="Permission system not configured")

        loop = asyncio.get_running_loop()
        permission_id = generate_permission_id()
        while permission_id in self._pending:
            permission_id = generate_permission_id()

        pending = PendingPermission(
            id=permission_id,
            chat_id=chat_id,
            tool_name=tool_name,
            tool_input=tool_input,
            future=loop.create_future(),
        )
        pending.timeout_handle = loop.call_later(
            self.timeout_seconds, self._handle_timeout, permission_id
        )
        with self._lock:
            self._pending[permission_id] = pending

        logger.info(
            "Permission requested: id=%s chat=%s tool=%s", permission_id, chat_id, tool_name
        )
        self._deliver(notifier, pending)

        try:
            return await pending.future
        finally:
            # Covers the awaiting side being cancelled; a no-op once settled.
            taken = self._take(permission_id)
            if taken is not None:
                logger.debug("Permission request abandoned: id=%s", permission_id)

    def _deliver(self, notifier: PermissionNotifier, pending: PendingPermission) -> None:
        """Run the notifier in the background; failures deny this request."""
        try:
            awaitable = notifier(pending.chat_id, pending.id, pending.tool_name, pending.tool_input)
            task = asyncio.ensure_future(awaitable)
        except Exception as exc:
            self._notify_failed(pending.id, exc)
            return
        self._notify_tasks.add(task)
        task.add_done_callback(lambda t: self._on_notify_done(pending.id, t))

    def _on_notify_done(self, permission_id: str, task: asyncio.Task[None]) -> None:
        self._notify_tasks.discard(task)
        if task.cancelled():
            self._notify_failed(permission_id, asyncio.CancelledError())
            return
        exc = task.exception()
        if exc is not None:
            self._notify_failed(permission_id, exc)

    def _notify_failed(self, permission_id: str, exc: BaseException) -> None:
        logger.error("Failed to send permission request %s: %s", permission_id, exc)
        self.resolve_permission(
            permission_id,
            PermissionResponse(allowed=False, message="Failed to send permission request"),
        )

    # --- Resolution ---

    def _take(self, permission_id: str) -> PendingPermission | None:
        """Atomically remove an unresolved entry; None if someone got there first."""
        with self._lock:
            pending = self._pending.pop(permission_id, None)
            if pending is None or pending.resolved:
                return None
            pending.resolved = True
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        return pending

    @staticmethod
    def _settle(pending: PendingPermission, response: PermissionResponse) -> None:
        future = pending.future

        def _set() -> None:
            if not future.done():
                future.set_result(response)

        loop = future.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            _set()
        else:
            loop.call_soon_threadsafe(_set)

    def resolve_permission(self, permission_id: str, response: PermissionResponse) -> bool:
        """Settle a pending request. Returns False if it was already settled or unknown."""
        pending = self._take(permission_id)
        if pending is None:
            logger.warning("Permission not found or already resolved: id=%s", permission_id)
            return False

        if response.allowed and response.always_allow:
            self.set_tool_always_allowed(pending.chat_id, pending.tool_name)

        logger.info(
            "Permission resolved: id=%s chat=%s tool=%s allowed=%s always=%s",
            permission_id,
            pending.chat_id,
            pending.tool_name,
            response.allowed,
            response.always_allow,
        )
        self._settle(pending, response)
        return True

    def _handle_timeout(self, permission_id: str) -> None:
        pending = self._take(permission_id)
        if pending is None:
            return
        logger.info(
            "Permission request timed out: id=%s chat=%s tool=%s",
            permission_id,
            pending.chat_id,
            pending.tool_name,
        )
        self._settle(
            pending,
            PermissionResponse(
                allowed=False,
                message=f"Permission request timed out after {self.timeout_seconds:g} seconds",
            ),
        )

    def cancel_pending_for_chat(self, chat_id: ChatId) -> int:
        """Deny every pending request for ``chat_id``. Returns how many were cancelled."""
        with self._lock:
            ids = [pid for pid, p in self._pending.items() if p.chat_id == chat_id]
        cancelled = 0
        for permission_id in ids:
            pending = self._take(permission_id)
            if pending is None:
                continue
            self._settle(
                pending, PermissionResponse(allowed=False, message="Permission request cancelled")
            )
            cancelled += 1
        if cancelled:
            logger.info("Cancelled %d pending permission(s) for chat=%s", cancelled, chat_id)
        return cancelled

    # --- Introspection ---

    def get_pending(self, permission_id: str) -> PendingPermission | None:
        return self._pending.get(permission_id)

    def pending_for_chat(self, chat_id: ChatId) -> list[PendingPermission]:
        with self._lock:
            return [p for p in self._pending.values() if p.chat_id == chat_id]

    @property
    def pending_count(self) -> int:
        return len(self._pending)
