"""Client-side conversation state machine.

ConversationController turns the relay's event stream into a message
timeline. It is either idle or streaming; messages sent while streaming
wait in a FIFO queue, and a queued message's bubble only enters the
timeline when it is actually dispatched.

State Diagram:

    IDLE ──send──> STREAMING ──result / exit / fatal error──> IDLE ─┐
                   │    ^                                          │
                   │    └────────────── dispatch from queue <──────┘
                   ├──send──> STREAMING (enqueue)
                   └──busy──> IDLE (message back to head of queue)

    Any state ──rewind──> IDLE (timeline truncated, queue cleared)

Every event carries the run id of the run that produced it. Events from
any run but the active one never touch the timeline; an old run's exit
only serves as a cue to retry the queue.
"""
from __future__ import annotations

import logging
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Protocol

from chatrelay.adapters.events import (
    AssistantMessage,
    ProcessError,
    ProcessExit,
    RelayEvent,
    ResultEvent,
    RunRejected,
    StreamDelta,
    SystemEvent,
    UserEcho,
)
from chatrelay.client import timeline
from chatrelay.engine.errors import RelayConnectionError
from chatrelay.shared.models.message import (
    ChatMessage,
    MessageRole,
    TextBlock,
    ToolUseResult,
    blocks_from_content,
)
from chatrelay.shared.models.session import SessionMessage, UsageInfo

logger = logging.getLogger(__name__)

# Exit codes produced by our own abort: Windows STATUS_DLL_INIT_FAILED
# and STATUS_CONTROL_C_EXIT from taskkill, and signal deaths on POSIX.
FORCED_EXIT_CODES = frozenset({
    1,
    3221225794,
    3221225786,
    -2, -9, -15,
    130, 137, 143,
})


class ConversationState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"


class Trigger(str, Enum):
    SEND = "send"
    TERMINAL = "terminal"
    BUSY = "busy"
    REWIND = "rewind"


class Action(str, Enum):
    DISPATCH = "dispatch"
    ENQUEUE = "enqueue"
    DRAIN = "drain"
    REQUEUE = "requeue"
    RESET = "reset"


TRANSITIONS: dict[tuple[ConversationState, Trigger], tuple[ConversationState, Action]] = {
    (ConversationState.IDLE, Trigger.SEND): (ConversationState.STREAMING, Action.DISPATCH),
    (ConversationState.STREAMING, Trigger.SEND): (ConversationState.STREAMING, Action.ENQUEUE),
    (ConversationState.STREAMING, Trigger.TERMINAL): (ConversationState.IDLE, Action.DRAIN),
    (ConversationState.IDLE, Trigger.TERMINAL): (ConversationState.IDLE, Action.DRAIN),
    (ConversationState.STREAMING, Trigger.BUSY): (ConversationState.IDLE, Action.REQUEUE),
    (ConversationState.IDLE, Trigger.REWIND): (ConversationState.IDLE, Action.RESET),
    (ConversationState.STREAMING, Trigger.REWIND): (ConversationState.IDLE, Action.RESET),
}


def next_transition(
    state: ConversationState, trigger: Trigger,
) -> tuple[ConversationState, Action]:
    """Look up a transition. Raises ValueError if it is not allowed."""
    try:
        return TRANSITIONS[(state, trigger)]
    except KeyError:
        raise ValueError(
            f"Invalid conversation transition: {state.value} on {trigger.value}"
        ) from None


class RelayChannel(Protocol):
    """What the controller needs from its connection to the relay."""

    async def send_run(
        self,
        *,
        message: str,
        session_id: str | None,
        model: str | None,
        cwd: str,
        run_id: str,
    ) -> None: ...

    async def send_abort(self) -> None: ...

    async def rewind_session(self, session_id: str, cwd: str, user_turn_index: int) -> bool: ...


Listener = Callable[[str], None]


class ConversationController:
    """Timeline, streaming buffer and send queue for one conversation."""

    def __init__(
        self,
        channel: RelayChannel,
        *,
        cwd: str,
        model: str | None = None,
        session_id: str | None = None,
        listener: Listener | None = None,
    ) -> None:
        self._channel = channel
        self.cwd = cwd
        self.model = model
        self.session_id = session_id
        self._listener = listener

        self.state = ConversationState.IDLE
        self.messages: list[ChatMessage] = []
        self.streaming_text = ""
        self.usage = UsageInfo()
        self.notices: list[str] = []
        self.last_exit_code: int | None = None

        self._queue: deque[str] = deque()
        self._active_run_id: str | None = None
        # (message id of the dispatched bubble, its text)
        self._inflight: tuple[str, str] | None = None

    # ── Introspection ──

    @property
    def queued(self) -> list[str]:
        return list(self._queue)

    @property
    def active_run_id(self) -> str | None:
        return self._active_run_id

    @property
    def is_streaming(self) -> bool:
        return self.state is ConversationState.STREAMING

    def user_turn_index(self, message_id: str) -> int | None:
        return timeline.user_turn_index(self.messages, message_id)

    # ── Commands ──

    async def send_message(self, text: str) -> bool:
        """Dispatch *text*, or queue it while a run is streaming.

        Returns True when it was dispatched right away.
        """
        if not text or not text.strip():
            return False
        if self._apply(Trigger.SEND) is Action.ENQUEUE:
            self._queue.append(text)
            logger.debug("Queued message (%d waiting)", len(self._queue))
            self._notify("queue")
            return False
        await self._dispatch(text)
        return True

    async def abort(self) -> bool:
        """Ask the relay to stop the active run. The exit event ends it."""
        if self.state is not ConversationState.STREAMING:
            return False
        try:
            await self._channel.send_abort()
        except RelayConnectionError as exc:
            logger.error("Abort not delivered: %s", exc)
            self._add_notice(f"Abort failed: {exc.reason}")
            return False
        return True

    async def rewind(self, message_id: str, user_turn_index: int | None = None) -> bool:
        """Cut the conversation back to just before *message_id*.

        The persisted log is rewound first; the local timeline is only
        touched once the relay confirms.
        """
        if user_turn_index is None:
            user_turn_index = self.user_turn_index(message_id)
            if user_turn_index is None:
                logger.warning("rewind: %s is not a user turn", message_id)
                return False
        if self.state is ConversationState.STREAMING:
            await self.abort()
        if not self.session_id:
            logger.info("rewind: no session yet")
            return False
        try:
            ok = await self._channel.rewind_session(self.session_id, self.cwd, user_turn_index)
        except RelayConnectionError as exc:
            logger.error("rewind failed: %s", exc)
            self._add_notice(f"Rewind failed: {exc.reason}")
            return False
        if not ok:
            self._add_notice("Rewind failed: turn not found in session log")
            return False

        self._apply(Trigger.REWIND)
        cut = next((i for i, m in enumerate(self.messages) if m.id == message_id), None)
        if cut is not None:
            del self.messages[cut:]
        self.streaming_text = ""
        self._queue.clear()
        self._active_run_id = None
        self._inflight = None
        logger.info(
            "Rewound session %s to turn %d (%d message(s) kept)",
            self.session_id, user_turn_index, len(self.messages),
        )
        self._notify("timeline")
        return True

    def load_history(self, session_id: str, entries: Sequence[SessionMessage]) -> bool:
        """Replace the timeline with a stored session. Refused while streaming."""
        if self.state is ConversationState.STREAMING:
            return False
        self.messages = [
            ChatMessage(
                role=MessageRole.USER if entry.type == "user" else MessageRole.ASSISTANT,
                content=blocks_from_content(entry.content),
                uuid=entry.uuid or None,
                timestamp=entry.timestamp,
                tool_use_result=ToolUseResult.from_raw(entry.tool_use_result),
            )
            for entry in entries
            if entry.type in ("user", "assistant")
        ]
        self.session_id = session_id
        self.streaming_text = ""
        self._queue.clear()
        self._active_run_id = None
        self._inflight = None
        self._notify("timeline")
        return True

    def new_conversation(self) -> bool:
        if self.state is ConversationState.STREAMING:
            return False
        self.messages = []
        self.session_id = None
        self.streaming_text = ""
        self.usage = UsageInfo()
        self._queue.clear()
        self._active_run_id = None
        self._inflight = None
        self._notify("timeline")
        return True

    # ── Events ──

    async def handle_event(self, event: RelayEvent) -> None:
        stale = event.run_id is not None and event.run_id != self._active_run_id

        if isinstance(event, (ProcessExit, ResultEvent)) and stale:
            # An earlier run finished; the relay may now accept queued work.
            if isinstance(event, ProcessExit) and self.state is ConversationState.IDLE:
                await self._drain()
            return
        if stale:
            logger.debug("Ignoring %s from run %s", event.event_type, event.run_id)
            if isinstance(event, ProcessError):
                logger.warning("Error from earlier run %s: %s", event.run_id, event.message)
            return

        if isinstance(event, SystemEvent):
            if event.session_id and not self.session_id:
                self.session_id = event.session_id
                self._notify("session")
        elif isinstance(event, StreamDelta):
            self.streaming_text += event.text
            self._notify("stream")
        elif isinstance(event, AssistantMessage):
            self.streaming_text = ""
            self.messages.append(ChatMessage(
                role=MessageRole.ASSISTANT,
                content=blocks_from_content(event.content),
                uuid=event.uuid,
            ))
            if event.session_id and event.session_id != self.session_id:
                self.session_id = event.session_id
                self._notify("session")
            self._notify("timeline")
        elif isinstance(event, UserEcho):
            self.messages.append(ChatMessage(
                role=MessageRole.USER,
                content=blocks_from_content(event.content),
                uuid=event.uuid,
                tool_use_result=event.tool_use_result,
            ))
            self._notify("timeline")
        elif isinstance(event, ResultEvent):
            self.usage = UsageInfo.from_result(event.usage, event.total_cost_usd)
            if event.session_id:
                self.session_id = event.session_id
            self._notify("usage")
            await self._finish_run()
        elif isinstance(event, ProcessExit):
            self.last_exit_code = event.code
            if event.code not in (0, None) and event.code not in FORCED_EXIT_CODES:
                logger.warning("Agent process exited abnormally with code %s", event.code)
                self._add_notice(f"Agent exited with code {event.code}")
            await self._finish_run()
        elif isinstance(event, ProcessError):
            logger.warning("Relay error [%s]: %s", event.code, event.message)
            self._add_notice(event.message)
            if event.fatal:
                await self._finish_run()
        elif isinstance(event, RunRejected):
            self._reject_inflight(event.message)

    # ── Internals ──

    def _apply(self, trigger: Trigger) -> Action:
        new_state, action = next_transition(self.state, trigger)
        if new_state is not self.state:
            logger.debug("Conversation %s -> %s on %s", self.state.value, new_state.value, trigger.value)
            self.state = new_state
            self._notify("state")
        return action

    async def _dispatch(self, text: str) -> None:
        run_id = uuid.uuid4().hex[:12]
        bubble = ChatMessage(role=MessageRole.USER, content=[TextBlock(text=text)])
        self.messages.append(bubble)
        self.streaming_text = ""
        self._active_run_id = run_id
        self._inflight = (bubble.id, text)
        self._notify("timeline")
        try:
            await self._channel.send_run(
                message=text,
                session_id=self.session_id,
                model=self.model,
                cwd=self.cwd,
                run_id=run_id,
            )
        except RelayConnectionError as exc:
            logger.error("Dispatch failed: %s", exc)
            self._reject_inflight(f"Not sent: {exc.reason}")

    def _reject_inflight(self, reason: str) -> None:
        """Undo a dispatch the relay did not accept; keep the message queued."""
        if self.state is not ConversationState.STREAMING or self._inflight is None:
            return
        self._apply(Trigger.BUSY)
        bubble_id, text = self._inflight
        self._inflight = None
        self.messages = [m for m in self.messages if m.id != bubble_id]
        self._queue.appendleft(text)
        self._add_notice(reason)
        self._notify("timeline")

    async def _finish_run(self) -> None:
        self.streaming_text = ""
        self._inflight = None
        if self._apply(Trigger.TERMINAL) is Action.DRAIN:
            await self._drain()

    async def _drain(self) -> None:
        if self.state is not ConversationState.IDLE or not self._queue:
            return
        text = self._queue.popleft()
        self._apply(Trigger.SEND)
        self._notify("queue")
        await self._dispatch(text)

    def _add_notice(self, text: str) -> None:
        self.notices.append(text)
        self._notify("notice")

    def _notify(self, what: str) -> None:
        if self._listener is None:
            return
        try:
            self._listener(what)
        except Exception:
            logger.exception("Conversation listener failed on %s", what)
