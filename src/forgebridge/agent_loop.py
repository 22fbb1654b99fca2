"""
Agent Loop - multi-turn tool use against the live scene.

One user message drives the loop through these states:

    Idle -> AwaitingModel -> ExecutingTools -> AwaitingModel -> ... -> Done
                                  |
                                  +-> AwaitingApproval (approval mode)

Each model turn may propose tool calls; they are executed through the same
registry the UI uses and their results are fed back to the model, one text
block per call. The loop ends when the model answers without tool calls,
when max_iterations turns have been taken (Done, with a truncation notice),
on cancellation (Cancelled) or when the engine channel or the model client
fails (Errored). A failing tool call is not fatal: its structured error goes
back to the model like any other result.

Cancellation is checked at every state transition and at every suspension
point (model request, dispatch). Results that arrive after cancellation
are discarded.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from forgebridge.cancellation import CancellationToken
from forgebridge.config import LoopConfig
from forgebridge.context import ContextManager, describe_scene
from forgebridge.errors import BridgeError, ChannelError, LLMError, LoopCancelled
from forgebridge.events import EventLog, EventType
from forgebridge.registry import HandlerContext, ToolRegistry
from forgebridge.security import BatchReview, SecurityGate, sanitize_chat_input
from forgebridge.store import HistoryEntry
from forgebridge.types import Message, Role, ToolCall, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are the assistant of a 3D game editor. You change the scene only by "
    "calling the provided tools. Use the entity ids shown in the scene summary. "
    "When a tool returns an error, correct the arguments or explain the problem "
    "to the user."
)

TRUNCATION_NOTICE = (
    "Stopped after reaching the maximum number of steps for one message. "
    "Send another message to continue."
)


class LoopState(Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_APPROVAL = "awaiting_approval"
    DONE = "done"
    CANCELLED = "cancelled"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.CANCELLED, LoopState.ERRORED})
RUNNING_STATES = frozenset({LoopState.AWAITING_MODEL, LoopState.EXECUTING_TOOLS})


class ChatModel(Protocol):
    """Anything that answers a chat request like LLMClient."""

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> Any: ...


@dataclass
class AgentTurn:
    """One model response and the execution of the calls it proposed."""
    index: int
    model_output: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    review: BatchReview | None = None
    approved: bool | None = None
    history: list[HistoryEntry] = field(default_factory=list, repr=False)
    undone: bool = False


@dataclass
class PendingApproval:
    """A batch waiting for a human decision."""
    turn_index: int
    tool_calls: list[ToolCall]
    review: BatchReview | None = None


Approver = Callable[[PendingApproval], Awaitable[bool]]


@dataclass
class LoopResult:
    """Outcome of running the loop for one user message."""
    state: LoopState
    response: str = ""
    turns: list[AgentTurn] = field(default_factory=list)
    stopped_reason: str = ""
    error: str | None = None
    truncated: bool = False
    pending_approval: PendingApproval | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is LoopState.DONE and not self.truncated


class AgentLoop:
    """
    Drives the model through tool-use turns for one conversation.

    In approval mode every proposed batch is reviewed by the security gate
    and then put to the approver. Without an approver the loop pauses in
    AwaitingApproval and returns; call resume() with the decision.
    """

    def __init__(
        self,
        llm: ChatModel,
        registry: ToolRegistry,
        context: HandlerContext,
        config: LoopConfig | None = None,
        gate: SecurityGate | None = None,
        approver: Approver | None = None,
        event_log: EventLog | None = None,
        context_manager: ContextManager | None = None,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self.context = context
        self.config = config or LoopConfig()
        self.gate = gate
        self.approver = approver
        self.event_log = event_log if event_log is not None else EventLog()
        self.context_manager = context_manager

        self.state = LoopState.IDLE
        self.messages: list[Message] = []
        self.turns: list[AgentTurn] = []
        self._token: CancellationToken | None = None
        self._pending: PendingApproval | None = None
        self._tools = registry.get_schemas()

    # --- Public API --------------------------------------------------------

    @property
    def pending_approval(self) -> PendingApproval | None:
        return self._pending

    async def run(self, user_input: str, cancel_token: CancellationToken | None = None) -> LoopResult:
        """Run the loop for one user message."""
        if self.state in RUNNING_STATES:
            raise RuntimeError("Agent loop is already running")
        if self.state is LoopState.AWAITING_APPROVAL:
            raise RuntimeError("A batch is awaiting approval; call resume() first")

        text = sanitize_chat_input(user_input)
        if not text:
            return LoopResult(state=self.state, stopped_reason="empty_input", error="Empty message")

        self.messages.append(Message(role=Role.USER, content=text))
        self.event_log.log_event(EventType.USER_MESSAGE, content=text)
        self.turns = []
        self._token = cancel_token or CancellationToken()
        return await self._drive()

    async def resume(self, approved: bool) -> LoopResult:
        """Continue a loop paused in AwaitingApproval."""
        if self.state is not LoopState.AWAITING_APPROVAL or self._pending is None:
            raise RuntimeError("No batch is awaiting approval")
        turn = self.turns[self._pending.turn_index]
        self._pending = None
        return await self._drive(resume=(turn, approved))

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Request cancellation. A paused loop is cancelled immediately."""
        if self._token is not None:
            self._token.cancel(reason)
        if self.state is LoopState.AWAITING_APPROVAL:
            self._pending = None
            self._close_open_turn("Cancelled")
            self._transition(LoopState.CANCELLED)

    def reset(self) -> None:
        """Forget the conversation."""
        if self.state in RUNNING_STATES:
            raise RuntimeError("Cannot reset a running agent loop")
        self.messages.clear()
        self.turns.clear()
        self._pending = None
        self._token = None
        self.state = LoopState.IDLE

    async def undo_turn(self, index: int) -> int:
        """
        Undo every change made by one turn of the last run.

        The turn's changes must be the most recent entries on the undo stack.
        Returns the number of entries undone.
        """
        if self.state in RUNNING_STATES:
            raise RuntimeError("Cannot undo while the agent loop is running")
        turn = self.turns[index]
        entries = turn.history
        if turn.undone or not entries:
            return 0

        stack = self.context.store.undo_stack
        top = stack[-len(entries):]
        if len(top) != len(entries) or any(a is not b for a, b in zip(top, entries)):
            raise BridgeError(f"Turn {index} is not the latest change; undo later changes first")

        for _ in entries:
            await self.context.store.undo()
        turn.undone = True
        self.event_log.log_event(EventType.UNDO, f"turn_{index}", entries=len(entries))
        logger.info(f"Undid {len(entries)} changes from turn {index}")
        return len(entries)

    # --- State machine -----------------------------------------------------

    def _transition(self, new_state: LoopState) -> None:
        if new_state not in TERMINAL_STATES and self._token is not None:
            self._token.raise_if_cancelled()
        old_state = self.state
        self.state = new_state
        logger.info(f"Agent loop {old_state.value} -> {new_state.value}")
        self.event_log.log_event(
            EventType.STATE_CHANGE,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    async def _drive(self, resume: tuple[AgentTurn, bool] | None = None) -> LoopResult:
        try:
            if resume is not None:
                await self._settle_approval(*resume)
            self._transition(LoopState.AWAITING_MODEL)

            while True:
                if len(self.turns) >= self.config.max_iterations:
                    return self._truncated()

                response = await self._token.run(self._call_model())
                turn = AgentTurn(
                    index=len(self.turns),
                    model_output=response.content,
                    tool_calls=list(response.tool_calls),
                )
                self.turns.append(turn)
                self.messages.append(Message(
                    role=Role.ASSISTANT,
                    content=response.content,
                    tool_calls=[c.to_api_dict() for c in turn.tool_calls] or None,
                ))

                if not turn.tool_calls:
                    return self._finish(LoopState.DONE, "completed", response=response.content)

                self._transition(LoopState.EXECUTING_TOOLS)
                if self.config.approval_mode:
                    paused = await self._request_approval(turn)
                    if paused is not None:
                        return paused
                else:
                    await self._execute_turn(turn)
                self._transition(LoopState.AWAITING_MODEL)

        except LoopCancelled as e:
            self._close_open_turn("Cancelled")
            return self._finish(LoopState.CANCELLED, "cancelled", error=str(e) or "Cancelled")
        except ChannelError as e:
            logger.error(f"Engine channel failed during agent run: {e}")
            self._close_open_turn(f"Engine connection lost: {e}")
            return self._finish(LoopState.ERRORED, "channel_error", error=str(e))
        except LLMError as e:
            logger.error(f"Model request failed: {e}")
            return self._finish(LoopState.ERRORED, "llm_error", error=str(e))
        except Exception as e:
            # Any other failure of the model client or the approver ends the run.
            logger.exception(f"Agent run failed in state {self.state.value}")
            self._pending = None
            self._close_open_turn(f"{type(e).__name__}: {e}")
            return self._finish(LoopState.ERRORED, "internal_error", error=f"{type(e).__name__}: {e}")

    def _finish(
        self,
        state: LoopState,
        reason: str,
        response: str = "",
        error: str | None = None,
        truncated: bool = False,
    ) -> LoopResult:
        self._transition(state)
        return LoopResult(
            state=state,
            response=response,
            turns=list(self.turns),
            stopped_reason=reason,
            error=error,
            truncated=truncated,
        )

    def _truncated(self) -> LoopResult:
        logger.warning(f"Agent loop stopped after {len(self.turns)} turns")
        self.messages.append(Message(role=Role.ASSISTANT, content=TRUNCATION_NOTICE))
        return self._finish(
            LoopState.DONE,
            "max_iterations",
            response=TRUNCATION_NOTICE,
            truncated=True,
        )

    # --- Model -------------------------------------------------------------

    def _system_message(self) -> Message:
        prompt = self.config.system_prompt or DEFAULT_SYSTEM_PROMPT
        if self.config.include_scene_context:
            prompt = f"{prompt}\n\n{describe_scene(self.context.store)}"
        return Message(role=Role.SYSTEM, content=prompt)

    async def _call_model(self) -> Any:
        messages = [self._system_message(), *self.messages]
        if self.context_manager is not None:
            api_messages, _ = self.context_manager.build_context(messages, self._tools)
        else:
            api_messages = [m.to_dict() for m in messages]

        self.event_log.log_event(EventType.LLM_REQUEST, message_count=len(api_messages))
        response = await self.llm.chat(api_messages, tools=self._tools)
        self.event_log.log_event(
            EventType.LLM_RESPONSE,
            content=response.content,
            tool_calls=[c.name for c in response.tool_calls],
        )
        return response

    # --- Tools -------------------------------------------------------------

    async def _execute_turn(self, turn: AgentTurn) -> None:
        store = self.context.store
        before = len(store.undo_stack)
        context = self.context.with_token(self._token)
        try:
            for call in turn.tool_calls:
                self._token.raise_if_cancelled()
                self.event_log.log_event(
                    EventType.TOOL_CALL, call.id, name=call.name, arguments=call.arguments
                )
                result = await self._token.run(self.registry.execute_call(call, context))
                turn.tool_results.append(result)
                self.event_log.log_event(
                    EventType.TOOL_RESULT, call.id, success=result.success, error=result.error
                )
        finally:
            turn.history = store.undo_stack[before:]
        self._record_results(turn)

    def _record_results(self, turn: AgentTurn) -> None:
        for result in turn.tool_results:
            self.messages.append(Message(
                role=Role.TOOL,
                content=result.to_text(),
                tool_call_id=result.tool_call_id,
            ))

    def _close_open_turn(self, reason: str) -> None:
        # Every proposed call gets exactly one result message, even when the
        # turn was interrupted.
        if not self.turns or not self.turns[-1].tool_calls:
            return
        turn = self.turns[-1]
        answered = {
            m.tool_call_id for m in self.messages if m.role == Role.TOOL and m.tool_call_id
        }
        completed = {r.tool_call_id: r for r in turn.tool_results}
        for call in turn.tool_calls:
            if call.id in answered:
                continue
            result = completed.get(call.id) or ToolResult.failure(call.id, call.name, reason)
            self.messages.append(Message(
                role=Role.TOOL,
                content=result.to_text(),
                tool_call_id=call.id,
            ))

    # --- Approval ----------------------------------------------------------

    async def _request_approval(self, turn: AgentTurn) -> LoopResult | None:
        """Review and approve a batch. Returns a result if the loop pauses."""
        if self.gate is not None:
            turn.review = self.gate.review_batch(
                turn.tool_calls, self.context.store.snapshot, self.context.store.scripts
            )
            self.event_log.log_event(
                EventType.SECURITY_REVIEW, f"turn_{turn.index}", **turn.review.to_dict()
            )
        self._transition(LoopState.AWAITING_APPROVAL)

        if turn.review is not None and turn.review.blocked:
            await self._settle_approval(turn, False, turn.review.reason)
            return None

        pending = PendingApproval(turn.index, list(turn.tool_calls), turn.review)
        if self.approver is None:
            self._pending = pending
            logger.info(f"Turn {turn.index} awaiting approval of {len(turn.tool_calls)} calls")
            return LoopResult(
                state=LoopState.AWAITING_APPROVAL,
                response=turn.model_output,
                turns=list(self.turns),
                stopped_reason="awaiting_approval",
                pending_approval=pending,
            )

        approved = await self._token.run(self.approver(pending))
        await self._settle_approval(turn, bool(approved))
        return None

    async def _settle_approval(self, turn: AgentTurn, approved: bool, reason: str = "") -> None:
        turn.approved = approved
        self.event_log.log_event(
            EventType.APPROVAL, f"turn_{turn.index}", approved=approved, reason=reason
        )
        if approved:
            self._transition(LoopState.EXECUTING_TOOLS)
            await self._execute_turn(turn)
            return

        message = reason or "Rejected by user"
        turn.tool_results = [
            ToolResult.failure(call.id, call.name, message) for call in turn.tool_calls
        ]
        self._record_results(turn)
