from __future__ import annotations

import asyncio
import re
from typing import Any

import pytest

from chatrelay.core.permissions import (
    PermissionBroker,
    PermissionResponse,
    generate_permission_id,
)


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, str, str, dict[str, Any]]] = []
        self.delivered = asyncio.Event()

    async def __call__(
        self, chat_id: Any, permission_id: str, tool_name: str, tool_input: dict[str, Any]
    ) -> None:
        self.calls.append((chat_id, permission_id, tool_name, tool_input))
        self.delivered.set()

    @property
    def last_id(self) -> str:
        return self.calls[-1][1]


async def _start_request(
    broker: PermissionBroker, notifier: RecordingNotifier, chat_id: Any = 1, tool: str = "Bash"
) -> asyncio.Task[PermissionResponse]:
    notifier.delivered.clear()
    task = asyncio.create_task(broker.request_permission(chat_id, tool, {"command": "ls"}))
    await asyncio.wait_for(notifier.delivered.wait(), timeout=1)
    return task


def test_generate_permission_id_format() -> None:
    assert re.fullmatch(r"perm_\d+_[0-9a-z]{7}", generate_permission_id())


def test_timeout_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PermissionBroker(timeout_seconds=0)


@pytest.mark.asyncio
async def test_resolve_settles_waiting_request() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(notifier=notifier)
    task = await _start_request(broker, notifier)

    assert broker.pending_count == 1
    assert broker.resolve_permission(notifier.last_id, PermissionResponse(allowed=True))

    response = await task
    assert response.allowed
    assert broker.pending_count == 0


@pytest.mark.asyncio
async def test_second_resolution_is_a_noop() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(notifier=notifier)
    task = await _start_request(broker, notifier)
    permission_id = notifier.last_id

    assert broker.resolve_permission(permission_id, PermissionResponse(allowed=False, message="no"))
    assert not broker.resolve_permission(permission_id, PermissionResponse(allowed=True))

    response = await task
    assert not response.allowed
    assert response.message == "no"


def test_resolving_unknown_id_returns_false() -> None:
    broker = PermissionBroker()
    assert not broker.resolve_permission("perm_missing", PermissionResponse(allowed=True))


@pytest.mark.asyncio
async def test_timeout_resolves_as_denial() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(timeout_seconds=0.05, notifier=notifier)
    task = await _start_request(broker, notifier)

    response = await asyncio.wait_for(task, timeout=1)

    assert not response.allowed
    assert response.message == "Permission request timed out after 0.05 seconds"
    assert broker.pending_count == 0
    assert not broker.resolve_permission(notifier.last_id, PermissionResponse(allowed=True))


@pytest.mark.asyncio
async def test_resolution_cancels_timeout() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(timeout_seconds=0.05, notifier=notifier)
    task = await _start_request(broker, notifier)
    broker.resolve_permission(notifier.last_id, PermissionResponse(allowed=True))

    await asyncio.sleep(0.1)

    assert (await task).allowed


@pytest.mark.asyncio
async def test_always_allow_skips_notifier_and_creates_no_entry() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(notifier=notifier)
    task = await _start_request(broker, notifier, chat_id=7, tool="Write")
    broker.resolve_permission(
        notifier.last_id, PermissionResponse(allowed=True, always_allow=True)
    )
    await task

    response = await broker.request_permission(7, "Write", {"file_path": "x"})

    assert response.allowed
    assert len(notifier.calls) == 1
    assert broker.pending_count == 0
    assert broker.is_tool_always_allowed(7, "Write")
    assert not broker.is_tool_always_allowed(8, "Write")


@pytest.mark.asyncio
async def test_always_allow_with_denial_is_not_recorded() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(notifier=notifier)
    task = await _start_request(broker, notifier)
    broker.resolve_permission(
        notifier.last_id, PermissionResponse(allowed=False, always_allow=True)
    )
    await task

    assert not broker.is_tool_always_allowed(1, "Bash")


def test_clear_always_allowed() -> None:
    broker = PermissionBroker()
    broker.set_tool_always_allowed(1, "Read")
    broker.clear_always_allowed(1)
    assert not broker.is_tool_always_allowed(1, "Read")


@pytest.mark.asyncio
async def test_missing_notifier_denies_immediately() -> None:
    broker = PermissionBroker()

    response = await broker.request_permission(1, "Bash", {})

    assert not response.allowed
    assert response.message == "Permission system not configured"
    assert broker.pending_count == 0


@pytest.mark.asyncio
async def test_notifier_failure_denies_request() -> None:
    async def failing(*_args: Any) -> None:
        raise RuntimeError("transport down")

    broker = PermissionBroker(notifier=failing)

    response = await asyncio.wait_for(broker.request_permission(1, "Bash", {}), timeout=1)

    assert not response.allowed
    assert response.message == "Failed to send permission request"
    assert broker.pending_count == 0


@pytest.mark.asyncio
async def test_notifier_raising_synchronously_denies_request() -> None:
    def broken(*_args: Any) -> None:
        raise RuntimeError("boom")

    broker = PermissionBroker(notifier=broken)  # type: ignore[arg-type]

    response = await asyncio.wait_for(broker.request_permission(1, "Bash", {}), timeout=1)

    assert not response.allowed
    assert response.message == "Failed to send permission request"


@pytest.mark.asyncio
async def test_cancel_pending_for_chat_only_touches_that_chat() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(notifier=notifier)
    first = await _start_request(broker, notifier, chat_id="a")
    second = await _start_request(broker, notifier, chat_id="a", tool="Edit")
    other = await _start_request(broker, notifier, chat_id="b")

    assert broker.cancel_pending_for_chat("a") == 2

    for task in (first, second):
        response = await task
        assert not response.allowed
        assert response.message == "Permission request cancelled"
    assert not other.done()
    assert [p.chat_id for p in broker.pending_for_chat("b")] == ["b"]

    broker.resolve_permission(notifier.last_id, PermissionResponse(allowed=True))
    assert (await other).allowed


@pytest.mark.asyncio
async def test_cancelled_waiter_removes_its_entry() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(notifier=notifier)
    task = await _start_request(broker, notifier)
    permission_id = notifier.last_id

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert broker.get_pending(permission_id) is None
    assert not broker.resolve_permission(permission_id, PermissionResponse(allowed=True))


@pytest.mark.asyncio
async def test_resolve_from_another_thread() -> None:
    notifier = RecordingNotifier()
    broker = PermissionBroker(notifier=notifier)
    task = await _start_request(broker, notifier)

    resolved = await asyncio.to_thread(
        broker.resolve_permission, notifier.last_id, PermissionResponse(allowed=True)
    )

    assert resolved
    assert (await asyncio.wait_for(task, timeout=1)).allowed
