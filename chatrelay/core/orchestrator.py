"""ConversationOrchestrator: per-chat turn lifecycle on top of an agent engine.

Each chat is either idle or has exactly one active invocation. A message for
an idle chat opens a ``StreamingChannel`` and starts an invocation; a message
for an active chat is pushed into the running channel (injection) and the
engine picks it up as a follow-up within the same turn.

A turn stops taking input once its result arrives but may still be winding
down. A message in that window starts the next turn, which waits on the
chat's lane until the previous one has finished.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from ..errors import ChatRelayError, ConversationBusyError, EngineInvocationError
from ..storage.session_store import SessionStore
from .channel import StreamingChannel
from .config import (
    DEFAULT_MAX_TURNS,
    DEFAULT_MODEL,
    BotConfig,
    PermissionMode,
    load_mcp_servers,
    load_system_prompt,
    parse_engine_args,
)
from .events import (
    RESULT,
    SESSION_INIT,
    TEXT,
    THINKING,
    TOOL_USE,
    ChatId,
    QueryCallbacks,
    QueryResult,
    ToolDecision,
    ToolGate,
    preview,
)
from .permissions import DEFAULT_PERMISSION_TIMEOUT, PermissionBroker, PermissionNotifier
from .protocol import AgentEngine, EngineOptions

logger = logging.getLogger(__name__)


@dataclass
class ConversationState:
    """What the orchestrator remembers about one chat between turns."""

    chat_id: ChatId
    working_dir: str
    session_id: str | None = None


@dataclass
class ActiveInvocation:
    """A running turn: its input channel and the task driving the engine."""

    chat_id: ChatId
    channel: StreamingChannel[dict[str, Any]]
    task: asyncio.Task[QueryResult] | None = field(default=None, repr=False)
    started_at: float = field(default_factory=time.monotonic)
    # Set once the turn holds its chat's lane and is talking to the engine.
    started: bool = False
    cancel_requested: bool = False
    # Cleared when the chat's session is reset mid-turn so the old token
    # is not written back afterwards.
    persist_session: bool = True


@dataclass
class InvocationHandle:
    """Handle returned by ``dispatch`` for the turn a message ended up in."""

    invocation: ActiveInvocation
    injected: bool = False

    @property
    def chat_id(self) -> ChatId:
        return self.invocation.chat_id

    @property
    def channel(self) -> StreamingChannel[dict[str, Any]]:
        return self.invocation.channel

    @property
    def task(self) -> asyncio.Task[QueryResult]:
        assert self.invocation.task is not None
        return self.invocation.task

    def cancel(self) -> bool:
        """Close the turn's channel; the engine finishes its current step."""
        invocation = self.invocation
        if invocation.channel.closed:
            return False
        invocation.cancel_requested = True
        invocation.channel.close()
        return True

    def done(self) -> bool:
        """Return True if the turn has finished."""
        return self.task.done()

    async def wait(self) -> QueryResult:
        """Wait for the turn and return its result."""
        return await self.task

    @property
    def status(self) -> str:
        """Best-effort status for the turn."""
        if not self.task.done():
            return "running"
        if self.task.cancelled():
            return "cancelled"
        if self.task.exception():
            return "error"
        return self.task.result().status


@dataclass
class SessionStatus:
    has_session: bool
    session_id: str | None
    working_dir: str
    active: bool
    pending_permissions: int


def _retrieve_exception(task: asyncio.Task[Any]) -> None:
    # Failures are logged by the invocation itself; mark them retrieved so
    # fire-and-forget dispatches do not warn at shutdown.
    if not task.cancelled():
        task.exception()


def _log_callback_failure(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Progress callback failed", exc_info=exc)


class ConversationOrchestrator:
    """Owns conversation state for one bot.

    Usage::

        orchestrator = ConversationOrchestrator(
            engine=ClaudeAgentEngine(),
            store=SqliteSessionStore("sessions.db"),
            bot_name="BOT",
            working_dir="/srv/project",
        )
        result = await orchestrator.send_message(chat_id, "hello")
    """

    def __init__(
        self,
        *,
        engine: AgentEngine,
        store: SessionStore,
        bot_name: str,
        working_dir: str,
        model: str = DEFAULT_MODEL,
        max_turns: int = DEFAULT_MAX_TURNS,
        permission_mode: PermissionMode | str = PermissionMode.DEFAULT,
        permission_timeout: float = DEFAULT_PERMISSION_TIMEOUT,
        system_prompt: str | None = None,
        mcp_servers: dict[str, Any] | None = None,
        thinking_budget: int = 0,
        engine_args: list[str] | tuple[str, ...] = (),
        broker: PermissionBroker | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.bot_name = bot_name
        self.working_dir = working_dir
        self.model = model
        self.max_turns = max_turns
        self.permission_mode = PermissionMode.parse(permission_mode)
        self.system_prompt = system_prompt
        self.mcp_servers = mcp_servers
        self.thinking_budget = thinking_budget
        self.engine_args = list(engine_args)
        self._broker = broker or PermissionBroker(timeout_seconds=permission_timeout)
        self._sessions: dict[ChatId, ConversationState] = {}
        # Live turns per chat, oldest first. Only the last one can take
        # injected messages; earlier ones are finishing after their result.
        self._active: dict[ChatId, list[ActiveInvocation]] = {}
        # One lane per chat: a new turn waits until the previous one has drained.
        self._lanes: defaultdict[ChatId, asyncio.Lock] = defaultdict(asyncio.Lock)
        logger.info(
            "Orchestrator initialized: bot=%s working_dir=%s model=%s permission_mode=%s",
            bot_name,
            working_dir,
            model,
            self.permission_mode.value,
        )

    @classmethod
    def from_config(
        cls,
        config: BotConfig,
        *,
        engine: AgentEngine,
        store: SessionStore,
        broker: PermissionBroker | None = None,
    ) -> ConversationOrchestrator:
        """Build an orchestrator from a ``BotConfig``."""
        system_prompt = None
        if config.system_prompt_file:
            system_prompt = load_system_prompt(config.system_prompt_file)
            logger.info("Loaded system prompt from %s", config.system_prompt_file)
        mcp_servers = None
        if config.mcp_config_file:
            mcp_servers = load_mcp_servers(config.mcp_config_file)
        return cls(
            engine=engine,
            store=store,
            bot_name=config.name,
            working_dir=config.working_dir,
            model=config.model,
            max_turns=config.max_turns,
            permission_mode=config.permission_mode,
            permission_timeout=config.permission_timeout,
            system_prompt=system_prompt,
            mcp_servers=mcp_servers,
            thinking_budget=config.thinking_budget,
            engine_args=config.claude_args,
            broker=broker,
        )

    # --- Permissions ---

    @property
    def permission_broker(self) -> PermissionBroker:
        return self._broker

    def set_permission_notifier(self, notifier: PermissionNotifier | None) -> None:
        self._broker.set_notifier(notifier)

    # --- Session state ---

    def get_session(self, chat_id: ChatId) -> ConversationState:
        """Return the chat's state, loading a persisted token on first use."""
        state = self._sessions.get(chat_id)
        if state is None:
            session_id = self.store.load(chat_id, self.bot_name)
            state = ConversationState(
                chat_id=chat_id, working_dir=self.working_dir, session_id=session_id
            )
            self._sessions[chat_id] = state
            if session_id:
                logger.info("Restored session: chat=%s session=%s", chat_id, session_id)
        return state

    def is_active(self, chat_id: ChatId) -> bool:
        return bool(self._active.get(chat_id))

    def _current(self, chat_id: ChatId) -> ActiveInvocation | None:
        invocations = self._active.get(chat_id)
        return invocations[-1] if invocations else None

    def active_chats(self) -> list[ChatId]:
        return list(self._active)

    def get_session_status(self, chat_id: ChatId) -> SessionStatus:
        state = self.get_session(chat_id)
        return SessionStatus(
            has_session=bool(state.session_id),
            session_id=state.session_id,
            working_dir=state.working_dir,
            active=self.is_active(chat_id),
            pending_permissions=len(self._broker.pending_for_chat(chat_id)),
        )

    def clear_session(self, chat_id: ChatId) -> None:
        """Forget the engine session token but keep the stored record."""
        self._detach_active(chat_id)
        state = self.get_session(chat_id)
        state.session_id = None
        self.store.clear_token(chat_id, self.bot_name)
        self._broker.clear_always_allowed(chat_id)
        self._broker.cancel_pending_for_chat(chat_id)
        logger.info("Session cleared: chat=%s", chat_id)

    def delete_session(self, chat_id: ChatId) -> None:
        """Remove all state for the chat, in memory and in the store."""
        self._detach_active(chat_id)
        self._sessions.pop(chat_id, None)
        self.store.delete(chat_id, self.bot_name)
        self._broker.clear_always_allowed(chat_id)
        self._broker.cancel_pending_for_chat(chat_id)
        lane = self._lanes.get(chat_id)
        if lane is not None and not lane.locked():
            del self._lanes[chat_id]
        logger.info("Session deleted: chat=%s", chat_id)

    def _detach_active(self, chat_id: ChatId) -> None:
        # Turns still waiting for the lane read the cleared state when they
        # start, so only turns already talking to the engine are detached.
        for invocation in self._active.get(chat_id, []):
            if not invocation.started:
                continue
            invocation.persist_session = False
            if not invocation.channel.closed:
                invocation.cancel_requested = True
                invocation.channel.close()

    # --- Turns ---

    def dispatch(
        self, chat_id: ChatId, text: str, callbacks: QueryCallbacks | None = None
    ) -> InvocationHandle:
        """Inject ``text`` into the active turn, or start a new one.

        ``callbacks`` apply only when a new turn is started; injected messages
        report through the callbacks of the turn they joined.
        """
        active = self._current(chat_id)
        if active is not None and not active.channel.closed:
            active.channel.push_text(text)
            logger.info(
                "Injected message into active turn: chat=%s pending=%d",
                chat_id,
                active.channel.pending_count,
            )
            return InvocationHandle(active, injected=True)

        state = self.get_session(chat_id)
        channel: StreamingChannel[dict[str, Any]] = StreamingChannel(state.session_id or "")
        channel.push_text(text)
        invocation = self._start(chat_id, channel, callbacks or QueryCallbacks())
        return InvocationHandle(invocation)

    async def send_message(
        self, chat_id: ChatId, text: str, callbacks: QueryCallbacks | None = None
    ) -> QueryResult | None:
        """Send a message and wait for its turn. Returns None when injected."""
        handle = self.dispatch(chat_id, text, callbacks)
        if handle.injected:
            return None
        return await handle.wait()

    async def query(
        self, chat_id: ChatId, prompt: str, callbacks: QueryCallbacks | None = None
    ) -> QueryResult:
        """Run a single-prompt turn that accepts no follow-ups."""
        if self.is_active(chat_id):
            raise ConversationBusyError(chat_id)
        channel: StreamingChannel[dict[str, Any]] = StreamingChannel()
        channel.close()
        invocation = self._start(chat_id, channel, callbacks or QueryCallbacks(), prompt=prompt)
        assert invocation.task is not None
        return await invocation.task

    def cancel(self, chat_id: ChatId) -> bool:
        """Soft-cancel the chat's turns by closing their channels.

        The engine completes the step it is on; queued messages still drain.
        Returns False if no turn was accepting input.
        """
        cancelled = False
        for invocation in self._active.get(chat_id, []):
            if invocation.channel.closed:
                continue
            invocation.cancel_requested = True
            invocation.channel.close()
            cancelled = True
        if cancelled:
            logger.info("Turn cancelled: chat=%s", chat_id)
        return cancelled

    async def shutdown(self) -> None:
        """Close every channel, deny pending approvals and wait for turns to end."""
        invocations = [inv for chat in self._active.values() for inv in chat]
        for chat_id in list(self._active):
            self.cancel(chat_id)
            self._broker.cancel_pending_for_chat(chat_id)
        tasks = [inv.task for inv in invocations if inv.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator shut down: bot=%s", self.bot_name)

    def _start(
        self,
        chat_id: ChatId,
        channel: StreamingChannel[dict[str, Any]],
        callbacks: QueryCallbacks,
        prompt: str | None = None,
    ) -> ActiveInvocation:
        invocation = ActiveInvocation(chat_id=chat_id, channel=channel)
        self._active.setdefault(chat_id, []).append(invocation)
        invocation.task = asyncio.create_task(
            self._run_invocation(invocation, callbacks, prompt)
        )
        invocation.task.add_done_callback(_retrieve_exception)
        return invocation

    async def _run_invocation(
        self,
        invocation: ActiveInvocation,
        callbacks: QueryCallbacks,
        prompt: str | None,
    ) -> QueryResult:
        chat_id = invocation.chat_id
        try:
            async with self._lanes[chat_id]:
                invocation.started = True
                return await self._drive(invocation, callbacks, prompt)
        except EngineInvocationError as exc:
            if exc.chat_id is None:
                exc.chat_id = chat_id
            logger.error("Turn failed: chat=%s error=%s", chat_id, exc)
            raise
        except ChatRelayError:
            raise
        except Exception as exc:
            logger.exception("Turn failed: chat=%s", chat_id)
            raise EngineInvocationError(
                f"Agent invocation failed: {exc}", chat_id=chat_id
            ) from exc
        finally:
            invocation.channel.close()
            invocations = self._active.get(chat_id, [])
            if invocation in invocations:
                invocations.remove(invocation)
            if not invocations:
                self._active.pop(chat_id, None)

    async def _drive(
        self,
        invocation: ActiveInvocation,
        callbacks: QueryCallbacks,
        prompt: str | None,
    ) -> QueryResult:
        chat_id = invocation.chat_id
        channel = invocation.channel
        state = self.get_session(chat_id)
        channel.session_id = state.session_id or ""
        options = self._build_options(chat_id, state)

        logger.info(
            "Starting stream query: chat=%s session=%s model=%s",
            chat_id,
            state.session_id or "new",
            options.model,
        )
        started = time.monotonic()
        text_parts: list[str] = []
        segment_has_text = False
        tools_used: list[str] = []
        session_id = state.session_id
        cost_usd: float | None = None
        saw_result = False
        notifications: set[asyncio.Task[Any]] = set()

        async for event in self.engine.run(prompt if prompt is not None else channel, options):
            if event.type == SESSION_INIT:
                if event.session_id:
                    session_id = event.session_id
                    channel.session_id = event.session_id
            elif event.type == TEXT:
                if event.content:
                    text_parts.append(event.content)
                    segment_has_text = True
                    self._notify(notifications, callbacks.on_progress, event.content)
            elif event.type == TOOL_USE:
                name = event.tool_name or ""
                if name and name not in tools_used:
                    tools_used.append(name)
                self._notify(notifications, callbacks.on_tool_use, name, event.tool_input or {})
            elif event.type == THINKING:
                if event.content:
                    self._notify(notifications, callbacks.on_thinking, event.content)
            elif event.type == RESULT:
                saw_result = True
                if event.is_error:
                    logger.warning("Engine reported an error result: chat=%s", chat_id)
                if event.session_id:
                    session_id = event.session_id
                    channel.session_id = event.session_id
                if event.cost_usd is not None:
                    cost_usd = event.cost_usd
                if not segment_has_text and event.content:
                    text_parts.append(event.content)
                segment_has_text = False
                if invocation.persist_session:
                    self._persist_session(state, session_id)
                if not channel.has_pending:
                    channel.close()

        if invocation.persist_session:
            self._persist_session(state, session_id)
        if notifications:
            await asyncio.gather(*notifications, return_exceptions=True)

        if saw_result:
            status = "completed"
        elif invocation.cancel_requested:
            status = "cancelled"
        else:
            status = "incomplete"
        text = "\n\n".join(text_parts)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Stream query completed: chat=%s status=%s duration_ms=%d tools=%s text=%s",
            chat_id,
            status,
            duration_ms,
            tools_used,
            preview(text),
        )
        return QueryResult(
            text=text,
            session_id=session_id,
            tools_used=tools_used,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            status=status,
        )

    def _persist_session(self, state: ConversationState, session_id: str | None) -> None:
        if not session_id or session_id == state.session_id:
            return
        state.session_id = session_id
        self.store.save(state.chat_id, self.bot_name, session_id)
        logger.info("Session saved: chat=%s session=%s", state.chat_id, session_id)

    def _build_options(self, chat_id: ChatId, state: ConversationState) -> EngineOptions:
        options = EngineOptions(
            working_dir=state.working_dir,
            model=self.model,
            max_turns=self.max_turns,
            permission_mode=self.permission_mode.value,
            resume=state.session_id,
            system_prompt=self.system_prompt,
            mcp_servers=self.mcp_servers,
            thinking_budget=self.thinking_budget,
        ).with_overrides(**parse_engine_args(self.engine_args))
        if PermissionMode.parse(options.permission_mode).requires_confirmation:
            options.can_use_tool = self._create_tool_gate(chat_id)
        return options

    def _create_tool_gate(self, chat_id: ChatId) -> ToolGate:
        async def gate(tool_name: str, tool_input: dict[str, Any]) -> ToolDecision:
            response = await self._broker.request_permission(chat_id, tool_name, tool_input)
            if response.allowed:
                return ToolDecision(allowed=True, updated_input=tool_input)
            return ToolDecision(
                allowed=False, message=response.message or "User denied permission"
            )

        return gate

    @staticmethod
    def _notify(pending: set[asyncio.Task[Any]], callback: Any, *args: Any) -> None:
        """Run a progress callback without holding up the engine stream.

        Coroutine callbacks become tasks collected in ``pending``; the turn
        waits for them before it returns its result.
        """
        if callback is None:
            return
        try:
            maybe_awaitable = callback(*args)
        except Exception:
            logger.exception("Progress callback failed")
            return
        if not inspect.isawaitable(maybe_awaitable):
            return
        task = asyncio.ensure_future(maybe_awaitable)
        pending.add(task)
        task.add_done_callback(_log_callback_failure)
