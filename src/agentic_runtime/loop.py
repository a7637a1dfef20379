"""Main agent–tool loop orchestrator."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import weakref
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .config import (
    DEFAULT_AGENT_ID,
    DEFAULT_MAX_ROUNDS,
    DEFAULT_MODEL,
    DEFAULT_TOOL_TIMEOUT,
    DEFAULT_TURN_TIMEOUT,
    TURN_LIMIT_MESSAGE,
    env_bool,
    env_float,
    env_int,
    env_str,
)
from .errors import (
    HistoryError,
    IntegrityError,
    ProviderError,
    TurnCancelledError,
    TurnTimeoutError,
)
from .executor import ToolExecutor
from .history import HistoryManager
from .llm import get_provider_for_model
from .models import (
    AgentProfile,
    Message,
    MessageDraft,
    NormalizedResponse,
    ToolCallRequest,
    ToolDefinition,
    ToolExecutionResult,
)
from .providers import LLMProvider, new_call_id
from .registry import ToolRegistry
from .streaming import (
    MessageAppendedEvent,
    ReasoningEvent,
    TokenEvent,
    ToolFinishedEvent,
    ToolStartedEvent,
    TurnAbortedEvent,
    TurnDoneEvent,
    TurnEventChannel,
)
from .system_prompt_loader import get_system_prompt
from .validator import filter_valid

logger = logging.getLogger(__name__)

T = TypeVar("T")

INVALID_TOOL_NAME = "invalid_tool_call"
PROVIDER_ERROR_MESSAGE = "Sorry, I could not complete this request because the model service failed."
TIMEOUT_MESSAGE = "Sorry, this request took too long and was stopped."
CANCELLED_MESSAGE = "This request was cancelled before it finished."
INTEGRITY_MESSAGE = "Sorry, this conversation could not be updated consistently, so the request was stopped."
MODEL_ERROR_MESSAGE = "Sorry, the model could not produce a response for this request."


class TurnState(str, Enum):
    AWAITING_PROVIDER_RESPONSE = "awaiting_provider_response"
    EXECUTING_TOOL = "executing_tool"
    COMMENT_REQUESTED = "comment_requested"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class TurnOptions:
    """Options for one turn of the agent loop."""

    max_rounds: int = DEFAULT_MAX_ROUNDS
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    turn_timeout: float | None = DEFAULT_TURN_TIMEOUT
    commentary: bool = True
    streaming: bool = False
    deduplicate_tool_calls: bool = True

    @classmethod
    def from_env(cls) -> TurnOptions:
        """Defaults overridden by AGENTIC_* environment variables."""
        turn_timeout = env_float("AGENTIC_TURN_TIMEOUT", DEFAULT_TURN_TIMEOUT)
        return cls(
            max_rounds=max(1, env_int("AGENTIC_MAX_ROUNDS", DEFAULT_MAX_ROUNDS)),
            tool_timeout=env_float("AGENTIC_TOOL_TIMEOUT", DEFAULT_TOOL_TIMEOUT),
            turn_timeout=turn_timeout if turn_timeout > 0 else None,
            commentary=env_bool("AGENTIC_COMMENTARY", True),
        )


@dataclass
class TurnOutcome:
    """Result of ``Orchestrator.run_turn``."""

    session_id: str
    state: TurnState
    final_content: str | None = None
    abort_reason: str | None = None
    rounds: int = 0
    appended: list[int] = field(default_factory=list)


@dataclass
class OrchestratorMetrics:
    """Counters aggregated over every turn an orchestrator has run."""

    turns: int = 0
    completed_turns: int = 0
    aborted_turns: int = 0
    total_turn_duration_ms: int = 0
    tool_calls: int = 0
    successful_tool_calls: int = 0
    failed_tool_calls: int = 0
    duplicate_tool_calls: int = 0
    total_tool_duration_ms: int = 0

    @property
    def avg_tool_duration_ms(self) -> float:
        return self.total_tool_duration_ms / self.tool_calls if self.tool_calls else 0.0

    @property
    def avg_turn_duration_ms(self) -> float:
        return self.total_turn_duration_ms / self.turns if self.turns else 0.0

    @property
    def tool_success_rate(self) -> float:
        """Share of executed tool calls that succeeded, between 0 and 1."""
        return self.successful_tool_calls / self.tool_calls if self.tool_calls else 0.0

    def record_tool(self, result: ToolExecutionResult, *, duplicate: bool = False) -> None:
        if duplicate:
            self.duplicate_tool_calls += 1
            return
        self.tool_calls += 1
        self.total_tool_duration_ms += result.duration_ms
        if result.ok:
            self.successful_tool_calls += 1
        else:
            self.failed_tool_calls += 1

    def record_turn(self, outcome: TurnOutcome, duration_ms: int) -> None:
        self.turns += 1
        self.total_turn_duration_ms += duration_ms
        if outcome.state == TurnState.DONE:
            self.completed_turns += 1
        else:
            self.aborted_turns += 1


@dataclass
class _TurnContext:
    session_id: str
    agent: AgentProfile
    options: TurnOptions
    provider: LLMProvider
    model: str | None
    channel: TurnEventChannel | None
    cancel_event: asyncio.Event | None
    deadline: float | None
    state: TurnState = TurnState.AWAITING_PROVIDER_RESPONSE
    rounds: int = 0
    appended: list[int] = field(default_factory=list)
    started: set[str] = field(default_factory=set)
    succeeded: dict[tuple[str, str], str] = field(default_factory=dict)

    def emit(self, event: Any) -> None:
        if self.channel is not None:
            self.channel.emit(event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise TurnCancelledError("turn cancelled by caller")

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        remaining = self.deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise TurnTimeoutError(f"turn exceeded {self.options.turn_timeout:g}s")
        return remaining


def _canonical_arguments(arguments_json: str) -> str:
    try:
        return json.dumps(json.loads(arguments_json or "{}"), sort_keys=True, separators=(",", ":"))
    except json.JSONDecodeError:
        return arguments_json


class Orchestrator:
    """Runs turns: provider call → tools → optional comment → repeat.

    Every step is appended to the ``HistoryManager`` before the next provider
    call, and every provider call is built from ``reconstruct_context``, so
    replaying a session reproduces exactly what each model call saw. Turns on
    the same session are serialized; different sessions run independently.
    """

    def __init__(
        self,
        history: HistoryManager,
        registry: ToolRegistry,
        *,
        provider: LLMProvider | None = None,
        agents: dict[str, AgentProfile] | None = None,
        options: TurnOptions | None = None,
        executor: ToolExecutor | None = None,
    ) -> None:
        self.history = history
        self.registry = registry
        self.provider = provider
        self.agents = dict(agents or {})
        self.options = options or TurnOptions()
        self.executor = executor or ToolExecutor(registry, self.options.tool_timeout)
        # Entries vanish once no turn holds or awaits the lock.
        self._turn_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._metrics = OrchestratorMetrics()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str | None = None) -> AgentProfile:
        agent_id = agent_id or DEFAULT_AGENT_ID
        agent = self.agents.get(agent_id)
        if agent is None:
            agent = AgentProfile(
                id=agent_id,
                model=env_str("AGENTIC_MODEL", DEFAULT_MODEL),
                system_prompt=get_system_prompt(agent_id) or None,
            )
            self.agents[agent_id] = agent
        return agent

    def _resolve_provider(self, agent: AgentProfile) -> tuple[LLMProvider, str | None]:
        if self.provider is not None:
            return self.provider, None
        return get_provider_for_model(agent.model)

    def metrics(self) -> OrchestratorMetrics:
        """Snapshot of the counters; later turns do not change it."""
        return dataclasses.replace(self._metrics)

    def _turn_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._turn_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._turn_locks[session_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        session_id: str,
        user_content: str,
        *,
        agent_id: str | None = None,
        options: TurnOptions | None = None,
        channel: TurnEventChannel | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Run one turn to completion and return how it ended.

        Provider, integrity, deadline and cancellation failures do not raise:
        they end the turn as ``ABORTED`` with an explanatory assistant message.
        Unexpected exceptions are logged with their traceback and end the
        turn the same way.
        """
        opts = options or self.options
        async with self._turn_lock(session_id):
            session = await self.history.get_session(session_id)
            agent = self.get_agent(agent_id or (session.agent_id if session else None))
            provider, model = self._resolve_provider(agent)
            loop = asyncio.get_running_loop()
            started = loop.time()
            ctx = _TurnContext(
                session_id=session_id,
                agent=agent,
                options=opts,
                provider=provider,
                model=model,
                channel=channel,
                cancel_event=cancel_event,
                deadline=loop.time() + opts.turn_timeout if opts.turn_timeout else None,
            )
            if session is None:
                session = await self.history.ensure_session(session_id, agent.id)
            logger.info("Turn started session=%s agent=%s", session_id, agent.id)

            try:
                if session.message_count == 0 and agent.system_prompt:
                    await self._append(ctx, MessageDraft.system(agent.system_prompt))
                await self._close_interrupted_calls(ctx, "interrupted by a previous turn")
                await self._append(ctx, MessageDraft.user(user_content))
                outcome = await self._loop(ctx)
            except ProviderError as exc:
                logger.error("Provider failure in session %s: %s", session_id, exc)
                outcome = await self._abort(ctx, f"provider_error: {exc}", PROVIDER_ERROR_MESSAGE)
            except TurnTimeoutError as exc:
                logger.warning("Turn deadline exceeded in session %s: %s", session_id, exc)
                outcome = await self._abort(ctx, "turn_timeout", TIMEOUT_MESSAGE)
            except TurnCancelledError:
                logger.info("Turn cancelled in session %s", session_id)
                outcome = await self._abort(ctx, "cancelled", CANCELLED_MESSAGE)
            except IntegrityError as exc:
                logger.error("History integrity violation in session %s: %s", session_id, exc)
                outcome = await self._abort(ctx, f"integrity_error: {exc}", INTEGRITY_MESSAGE)
            except Exception as exc:
                logger.exception("Unexpected failure in session %s", session_id)
                outcome = await self._abort(ctx, f"internal_error: {type(exc).__name__}", PROVIDER_ERROR_MESSAGE)
            self._metrics.record_turn(outcome, int((loop.time() - started) * 1000))

        logger.info(
            "Turn finished session=%s state=%s rounds=%d appended=%d",
            session_id,
            outcome.state.value,
            outcome.rounds,
            len(outcome.appended),
        )
        return outcome

    async def stream_turn(
        self,
        session_id: str,
        user_content: str,
        *,
        agent_id: str | None = None,
        options: TurnOptions | None = None,
    ) -> AsyncIterator[Any]:
        """Run a turn in the background and yield its events in order.

        Tokens are streamed from the provider. Closing the iterator early
        cancels the turn; what was already appended stays in history.
        """
        opts = options or self.options
        if not opts.streaming:
            opts = dataclasses.replace(opts, streaming=True)
        channel = TurnEventChannel()
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self.run_turn(
                session_id,
                user_content,
                agent_id=agent_id,
                options=opts,
                channel=channel,
                cancel_event=cancel_event,
            )
        )
        task.add_done_callback(lambda _t: channel.close())
        try:
            async for event in channel:
                yield event
        finally:
            if not task.done():
                cancel_event.set()
            await task

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _loop(self, ctx: _TurnContext) -> TurnOutcome:
        while True:
            tools = filter_valid(self.registry.definitions())
            ctx.rounds += 1
            response = await self._call_provider(ctx, tools or None)

            if response.finish_reason == "error":
                logger.warning("Model returned an error finish in session %s", ctx.session_id)
                return await self._abort(ctx, "model_error", response.content or MODEL_ERROR_MESSAGE)

            if response.finish_reason != "tool_calls" or not response.tool_calls:
                return await self._finish(ctx, response)

            calls = await self._sanitize_calls(ctx, response.tool_calls)
            offered = {t.name for t in tools}
            if ctx.options.commentary:
                for index, call in enumerate(calls):
                    reasoning = response.reasoning if index == 0 else None
                    await self._append(ctx, MessageDraft.tool_calls_request([call], reasoning=reasoning))
                    result = await self._execute_call(ctx, call, offered)
                    await self._append(ctx, MessageDraft.tool_result(result))
                    await self._request_comment(ctx)
            else:
                await self._append(ctx, MessageDraft.tool_calls_request(calls, reasoning=response.reasoning))
                for call in calls:
                    result = await self._execute_call(ctx, call, offered)
                    await self._append(ctx, MessageDraft.tool_result(result))

            if ctx.rounds >= ctx.options.max_rounds:
                logger.warning(
                    "Session %s reached max_rounds=%d without a final answer",
                    ctx.session_id,
                    ctx.options.max_rounds,
                )
                return await self._abort(
                    ctx,
                    "max_rounds",
                    TURN_LIMIT_MESSAGE.format(rounds=ctx.rounds),
                )

    async def _call_provider(
        self,
        ctx: _TurnContext,
        tools: list[ToolDefinition] | None,
    ) -> NormalizedResponse:
        ctx.check_cancelled()
        messages = await self.history.reconstruct_context(ctx.session_id)

        async def on_token(text: str) -> None:
            ctx.emit(TokenEvent(text=text))

        async def on_reasoning(text: str) -> None:
            ctx.emit(ReasoningEvent(text=text))

        call = ctx.provider.respond(
            messages,
            tools,
            streaming=ctx.options.streaming,
            on_token=on_token,
            on_reasoning=on_reasoning,
            model=ctx.model,
            **ctx.agent.completion_kwargs(),
        )
        return await self._guard(ctx, call)

    async def _request_comment(self, ctx: _TurnContext) -> None:
        """Ask the model, without tools, for a remark on the latest result."""
        ctx.state = TurnState.COMMENT_REQUESTED
        response = await self._call_provider(ctx, None)
        if response.tool_calls:
            logger.debug("Ignoring %d tool call(s) in a comment", len(response.tool_calls))
        if response.finish_reason == "error":
            logger.warning("Comment request failed in session %s; skipping", ctx.session_id)
            return
        content = (response.content or "").strip()
        if not content:
            return
        await self._append(
            ctx,
            MessageDraft.assistant(content, reasoning=response.reasoning, is_comment=True),
        )

    async def _execute_call(
        self,
        ctx: _TurnContext,
        call: ToolCallRequest,
        offered: set[str],
    ) -> ToolExecutionResult:
        ctx.check_cancelled()
        ctx.state = TurnState.EXECUTING_TOOL
        ctx.started.add(call.id)
        ctx.emit(ToolStartedEvent(name=call.name, tool_call_id=call.id))

        signature = (call.name, _canonical_arguments(call.arguments_json))
        duplicate = False
        if call.name not in offered:
            result = ToolExecutionResult.error(call.id, call.name, f"Unknown tool: {call.name}")
        elif ctx.options.deduplicate_tool_calls and signature in ctx.succeeded:
            earlier = ctx.succeeded[signature]
            duplicate = True
            logger.info("Skipping duplicate call %s of %s (same as %s)", call.id, call.name, earlier)
            result = ToolExecutionResult.error(
                call.id,
                call.name,
                f"Duplicate call: identical arguments were already executed in call {earlier}; reuse that result.",
                duplicate_of=earlier,
            )
        else:
            result = await self._guard(
                ctx,
                self.executor.execute(call.id, call.name, call.arguments_json, ctx.options.tool_timeout),
            )
            if result.ok:
                ctx.succeeded[signature] = call.id

        self._metrics.record_tool(result, duplicate=duplicate)
        ctx.emit(ToolFinishedEvent(tool_call_id=call.id, status=result.status))
        return result

    async def _guard(self, ctx: _TurnContext, awaitable: Awaitable[T]) -> T:
        """Await under the turn deadline, giving up early if the turn is cancelled."""
        task = asyncio.ensure_future(awaitable)
        try:
            timeout = ctx.remaining()
        except TurnTimeoutError:
            task.cancel()
            raise
        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter: asyncio.Future[Any] | None = None
        if ctx.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(ctx.cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Abandoned call failed after cancellation", exc_info=True)
        if ctx.cancelled:
            raise TurnCancelledError("turn cancelled by caller")
        raise TurnTimeoutError(f"turn exceeded {ctx.options.turn_timeout:g}s")

    async def _sanitize_calls(self, ctx: _TurnContext, calls: list[ToolCallRequest]) -> list[ToolCallRequest]:
        """Give every call a session-unique id and a non-blank name before it is persisted.

        Some servers number calls per response (``call_0``, ``call_1``...), so
        ids already used earlier in the session are replaced as well.
        """
        taken = await self.history.used_tool_call_ids(ctx.session_id, [c.id for c in calls])
        sanitized: list[ToolCallRequest] = []
        seen: set[str] = set()
        for call in calls:
            update: dict[str, str] = {}
            if not call.id.strip() or call.id in seen or call.id in taken:
                update["id"] = new_call_id()
            if not call.name.strip():
                update["name"] = INVALID_TOOL_NAME
            if update:
                logger.warning("Repairing tool call %r: %s", call.id, sorted(update))
                call = call.model_copy(update=update)
            seen.add(call.id)
            sanitized.append(call)
        return sanitized

    # ------------------------------------------------------------------
    # History and terminal states
    # ------------------------------------------------------------------

    async def _append(self, ctx: _TurnContext, draft: MessageDraft) -> Message:
        message = await self.history.append(ctx.session_id, draft)
        ctx.appended.append(message.sequence_number)
        ctx.emit(
            MessageAppendedEvent(
                sequence_number=message.sequence_number,
                role=message.role,
                is_comment=message.is_comment,
            )
        )
        return message

    async def _close_interrupted_calls(self, ctx: _TurnContext, reason: str) -> None:
        """Answer tool calls left without a result so the history stays well-formed."""
        for call in await self.history.pending_tool_calls(ctx.session_id):
            result = ToolExecutionResult.error(call.id, call.name, f"Tool call not completed: {reason}")
            await self._append(ctx, MessageDraft.tool_result(result))
            if call.id in ctx.started:
                ctx.emit(ToolFinishedEvent(tool_call_id=call.id, status="error"))

    async def _finish(self, ctx: _TurnContext, response: NormalizedResponse) -> TurnOutcome:
        content = response.content or ""
        await self._append(ctx, MessageDraft.assistant(content, reasoning=response.reasoning))
        ctx.state = TurnState.DONE
        ctx.emit(TurnDoneEvent(final_content=content))
        return self._outcome(ctx, final_content=content)

    async def _abort(self, ctx: _TurnContext, reason: str, message: str) -> TurnOutcome:
        """Close pending calls, append exactly one explanatory message, emit turn_aborted."""
        try:
            await self._close_interrupted_calls(ctx, reason)
            await self._append(ctx, MessageDraft.assistant(message))
        except HistoryError:
            logger.exception("Could not record the abort of session %s", ctx.session_id)
        ctx.state = TurnState.ABORTED
        ctx.emit(TurnAbortedEvent(reason=reason))
        return self._outcome(ctx, final_content=message, abort_reason=reason)

    @staticmethod
    def _outcome(
        ctx: _TurnContext,
        *,
        final_content: str | None,
        abort_reason: str | None = None,
    ) -> TurnOutcome:
        return TurnOutcome(
            session_id=ctx.session_id,
            state=ctx.state,
            final_content=final_content,
            abort_reason=abort_reason,
            rounds=ctx.rounds,
            appended=list(ctx.appended),
        )
