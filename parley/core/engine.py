"""
Session engine: the streaming state machine behind every conversation.

One engine owns many sessions. Each session alternates between the model
speaking (Streaming) and tools executing (ToolExecution) until a turn ends
without pending tool calls:

    Idle -> Streaming -> (ToolExecution -> Streaming)* -> Idle
    Streaming -> Error
    Streaming -> Idle (aborted)

Transport callbacks arrive on transport threads. Every callback carries the
generation it was registered for; a session's generation is bumped on each
request and on abort, so callbacks for a stale request are dropped. Events
of one session are applied under that session's lock.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from parley.core.access import AccessResolver, CatalogAccessResolver
from parley.core.conversation import build_api_messages
from parley.core.errors import (
    EngineError,
    EnvelopeError,
    NoAccessError,
    OfflineError,
    QuotaExceededError,
    SessionBusyError,
    classify_failure,
    classify_stream_error,
    format_error_markdown,
)
from parley.core.ledger import UsageLedger
from parley.core.model_registry import ModelCatalog, get_model_catalog, get_thinking_config
from parley.core.normalizer import EventNormalizer
from parley.core.providers import get_adapter
from parley.core.providers.base import ProviderAdapter, ReasoningConfig
from parley.core.telemetry import Span, TelemetryCollector
from parley.core.tokens import TokenBudget, get_context_window
from parley.core.tools import FunctionToolExecutor, ToolExecutor, ToolOutcome
from parley.core.transport import HttpxTransport, StreamKey, Subscription, Transport
from parley.core.usage import normalize_usage, price
from parley.models.config import EngineConfig
from parley.models.events import (
    BalanceUpdate,
    BlockStart,
    BlockStop,
    DirectToolCall,
    MessageDelta,
    MessageStop,
    NormalizedEvent,
    SignatureDelta,
    TextDelta,
    ThinkingDelta,
    ToolInputDelta,
    UsageOnly,
    event_usage,
)
from parley.models.session import (
    ABORT_MARKER,
    Message,
    MessageStatus,
    Session,
    SessionStatus,
    ThinkingBlock,
    ToolCall,
    ToolResult,
    ToolStatus,
    _utcnow,
)
from parley.models.usage import UsageSnapshot

logger = logging.getLogger(__name__)

Listener = Callable[[str, str, Any], None]

BUDGET_REACHED_TEXT = (
    "Monthly budget reached. Raise engine.monthly_budget in ~/.parley/models.yaml or wait until next month."
)
ABORTED_TOOL_OUTPUT = "Aborted"
LOOP_LIMIT_OUTPUT = "Tool loop limit reached"

# Actions returned from locked handlers, performed after the lock is released
_RUN_TOOLS = "run_tools"
_SETTLED = "settled"

_RESTING = (SessionStatus.IDLE, SessionStatus.ERROR)


@dataclass
class CompletionResult:
    """Result of a one-shot, non-streaming call."""

    text: str
    usage: UsageSnapshot
    model: str
    vendor: str
    raw: dict[str, Any] = field(default_factory=dict)

    def tool_input(self) -> dict[str, Any] | None:
        """Input of the first tool call in the response, when a tool was forced."""
        for block in self.raw.get("content") or []:
            if block.get("type") == "tool_use":
                return block.get("input") or {}
        for item in self.raw.get("output") or []:
            if item.get("type") == "function_call":
                try:
                    return json.loads(item.get("arguments") or "{}")
                except json.JSONDecodeError:
                    return {}
        for candidate in self.raw.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if "functionCall" in part:
                    return part["functionCall"].get("args") or {}
        return None


class _SessionRun:
    """Runtime state the engine keeps next to a session. Never persisted."""

    def __init__(self, session: Session):
        self.session = session
        self.lock = threading.RLock()
        self.idle = threading.Event()
        self.idle.set()
        self.generation = 0
        self.subscription: Subscription | None = None

        # Per-turn state, reset by _begin_turn
        self.adapter: ProviderAdapter | None = None
        self.normalizer: EventNormalizer | None = None
        self.vendor = ""
        self.vendor_model = ""
        self.open_index: int | None = None
        self.turn_handled = False
        self.turn_usage = UsageSnapshot()
        self.recorded_usage: UsageSnapshot | None = None  # What the ledger has for this turn
        self.block: str | None = None
        self.tool_json = ""
        self.thinking: ThinkingBlock | None = None
        self.span: Span | None = None

        # Background mode
        self.on_finished: Callable[[Session], None] | None = None
        self.finished_notified = False

    @property
    def open_message(self) -> Message | None:
        if self.open_index is None:
            return None
        return self.session.messages[self.open_index]

    def release_subscription(self) -> None:
        if self.subscription is not None:
            self.subscription.release()


class SessionEngine:
    """
    Drives streaming conversations against any configured vendor.

    Example:
        engine = SessionEngine(executor=FunctionToolExecutor({"read_file": read_file}),
                               tool_defs=[READ_FILE_SCHEMA])
        session = engine.create_session(model="sonnet")
        engine.send(session.id, "Summarize a.md")
        engine.wait_idle(session.id)
    """

    def __init__(
        self,
        transport: Transport | None = None,
        resolver: AccessResolver | None = None,
        executor: ToolExecutor | None = None,
        catalog: ModelCatalog | None = None,
        config: EngineConfig | None = None,
        ledger: UsageLedger | None = None,
        telemetry: TelemetryCollector | None = None,
        tool_defs: list[dict[str, Any]] | None = None,
    ):
        self.catalog = catalog or get_model_catalog()
        self.config = config or self.catalog.engine
        self.transport = transport or HttpxTransport(timeout=self.config.request_timeout)
        self.resolver = resolver or CatalogAccessResolver(self.catalog)
        self.executor = executor or FunctionToolExecutor()
        self.ledger = ledger or UsageLedger(monthly_limit=self.config.monthly_budget)
        self.telemetry = telemetry or TelemetryCollector(enabled=self.config.telemetry)
        self.tool_defs = tool_defs or []

        self._runs: dict[str, _SessionRun] = {}
        self._runs_lock = threading.Lock()
        self._listeners: list[Listener] = []

    # =========================================================================
    # Sessions
    # =========================================================================

    def create_session(self, model: str | None = None, system_prompt: str | None = None) -> Session:
        session = Session(model=model or self.config.default_model, system_prompt=system_prompt)
        self._register(session)
        return session

    def restore(self, data: dict[str, Any]) -> Session:
        """
        Rehydrate a snapshot into a live, idle session.

        A session that is already live keeps running and is returned as is;
        the snapshot is ignored.
        """
        session = Session.restore(data)
        live = self._register(session)
        if live is not session:
            logger.warning("Session %s is already live; ignoring the restored snapshot", session.id)
        return live

    def snapshot(self, session_id: str) -> dict[str, Any]:
        run = self._run(session_id)
        with run.lock:
            return run.session.snapshot()

    def get_session(self, session_id: str) -> Session | None:
        with self._runs_lock:
            run = self._runs.get(session_id)
        return run.session if run else None

    def list_sessions(self) -> list[Session]:
        with self._runs_lock:
            return [run.session for run in self._runs.values()]

    def _register(self, session: Session) -> Session:
        """Track a session unless one with the same id is already live."""
        with self._runs_lock:
            run = self._runs.get(session.id)
            if run is None:
                run = self._runs[session.id] = _SessionRun(session)
        return run.session

    def _run(self, session_id: str) -> _SessionRun:
        with self._runs_lock:
            run = self._runs.get(session_id)
        if run is None:
            raise KeyError(f"Unknown session: {session_id}")
        return run

    def wait_idle(self, session_id: str, timeout: float | None = None) -> bool:
        """Block until the session rests (Idle or Error). Returns False on timeout."""
        with self._runs_lock:
            run = self._runs.get(session_id)
        if run is None:
            return True
        return run.idle.wait(timeout)

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """
        Subscribe to engine events. Returns a function that unsubscribes.

        The callback receives ``(session_id, kind, data)`` where kind is one
        of text, thinking, tool_start, tool_end, state, usage, balance,
        error or loop_limit. It runs synchronously on the thread that
        produced the event.
        """
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _emit(self, session_id: str, kind: str, data: Any = None) -> None:
        for callback in list(self._listeners):
            try:
                callback(session_id, kind, data)
            except Exception:
                logger.exception("Listener failed handling %s event for %s", kind, session_id)

    def _set_status(self, run: _SessionRun, status: SessionStatus) -> None:
        session = run.session
        session.status = status
        session.updated_at = _utcnow()
        if status in _RESTING:
            run.idle.set()
        else:
            run.idle.clear()
        self._emit(session.id, "state", status.value)

    # =========================================================================
    # Sending
    # =========================================================================

    def send(self, session_id: str, text: str) -> None:
        """
        Append a user turn and start streaming the reply.

        Raises:
            KeyError: Unknown session
            SessionBusyError: The session is streaming or running tools
        """
        run = self._run(session_id)
        with run.lock:
            session = run.session
            if session.status not in _RESTING:
                raise SessionBusyError(session.id, session.status.value)

            session.messages.append(Message(role="user", content=text))
            if session.title is None:
                session.title = text[:50] + ("..." if len(text) > 50 else "")
            session.loop_depth = 0
            self._begin_turn(run)
        self._settle(run)

    def _begin_turn(self, run: _SessionRun) -> None:
        """Format and fire the next request. Caller holds the session lock."""
        session = run.session

        if self.ledger.is_over_budget():
            logger.info("Refusing turn for %s: monthly budget reached", session.id)
            session.messages.append(Message(role="assistant", content=BUDGET_REACHED_TEXT))
            self._emit(session.id, "error", BUDGET_REACHED_TEXT)
            self._set_status(run, SessionStatus.IDLE)
            return

        try:
            access = self.resolver.resolve(session.model)
        except OfflineError as e:
            self._fail_before_stream(run, e)
            return
        if access is None:
            self._fail_before_stream(run, NoAccessError(session.model))
            return

        adapter = get_adapter(access.vendor, access.vendor_hint)
        reasoning = self._reasoning(session.model, access.model, access.effective_vendor)
        budget = TokenBudget(get_context_window(session.model, self.catalog), thinking=reasoning is not None)
        api_messages, estimate = budget.fit(session.system_prompt, build_api_messages(session.messages))
        session.estimated_tokens = estimate

        request = adapter.format_request(
            access.endpoint,
            access.api_key,
            access.model,
            api_messages,
            system_prompt=session.system_prompt,
            tool_defs=self.tool_defs or None,
            max_tokens=self.config.max_tokens,
            reasoning=reasoning,
        )

        run.generation += 1
        key = StreamKey(session.id, run.generation)
        run.adapter = adapter
        run.normalizer = EventNormalizer(adapter)
        run.vendor = access.vendor
        run.vendor_model = access.model
        run.turn_handled = False
        run.turn_usage = UsageSnapshot()
        run.recorded_usage = None
        run.block = None
        run.tool_json = ""
        run.thinking = None
        run.span = self.telemetry.start_span(
            f"turn_{session.loop_depth}", "turn", model=access.model, vendor=access.vendor
        )

        session.messages.append(Message(role="assistant", status=MessageStatus.STREAMING))
        run.open_index = len(session.messages) - 1

        generation = run.generation
        run.subscription = self.transport.listen(
            key,
            on_chunk=lambda chunk: self._on_chunk(run, generation, chunk),
            on_done=lambda aborted: self._on_done(run, generation, aborted),
            on_error=lambda message: self._on_error(run, generation, message),
        )
        self._set_status(run, SessionStatus.STREAMING)
        logger.debug(
            "Streaming %s via %s (%s, ~%d tokens, generation %d)",
            session.id,
            access.vendor,
            access.model,
            estimate,
            generation,
        )
        self.transport.send(request.url, request.headers, request.encoded_body(), key)

    def _reasoning(self, model_id: str, vendor_model: str, vendor: str) -> ReasoningConfig | None:
        entry = self.catalog.find(model_id)
        if entry is not None:
            return self.catalog.thinking_config(entry, vendor)
        return get_thinking_config(vendor_model, vendor)

    def _fail_before_stream(self, run: _SessionRun, error: EngineError) -> None:
        session = run.session
        logger.warning("Cannot start turn for %s: %s", session.id, error)
        session.messages.append(
            Message(role="assistant", content=format_error_markdown(error), status=MessageStatus.ERROR)
        )
        self.telemetry.track_error(session.id, error.category, str(error))
        self._emit(session.id, "error", str(error))
        self._set_status(run, SessionStatus.ERROR)

    # =========================================================================
    # Transport callbacks
    # =========================================================================

    def _is_current(self, run: _SessionRun, generation: int) -> bool:
        return run.generation == generation and run.normalizer is not None

    def _on_chunk(self, run: _SessionRun, generation: int, chunk: bytes) -> None:
        with run.lock:
            if not self._is_current(run, generation):
                return
            action = self._apply_all(run, run.normalizer.feed(chunk))
        self._after(run, generation, action)

    def _on_done(self, run: _SessionRun, generation: int, aborted: bool) -> None:
        with run.lock:
            if not self._is_current(run, generation):
                return
            action = self._apply_all(run, run.normalizer.flush())
            if not run.turn_handled:
                if aborted:
                    self._abort_streaming(run)
                    action = _SETTLED
                elif run.normalizer.envelope_failed:
                    action = self._fail_turn(
                        run, EnvelopeError("The provider returned a response that could not be read.")
                    )
                else:
                    action = self._finish_turn(run)
        self._after(run, generation, action)

    def _on_error(self, run: _SessionRun, generation: int, message: str) -> None:
        with run.lock:
            if not self._is_current(run, generation) or run.turn_handled:
                return
            action = self._fail_turn(run, classify_failure(message))
        self._after(run, generation, action)

    def _after(self, run: _SessionRun, generation: int, action: str | None) -> None:
        if action == _RUN_TOOLS:
            self._run_tools(run, generation)
        elif action == _SETTLED:
            self._settle(run)

    # =========================================================================
    # Event application
    # =========================================================================

    def _apply_all(self, run: _SessionRun, events: list[NormalizedEvent]) -> str | None:
        action = None
        for event in events:
            result = self._apply(run, event)
            action = result or action
        return action

    def _apply(self, run: _SessionRun, event: NormalizedEvent) -> str | None:
        usage = event_usage(event)
        if run.turn_handled:
            # The transition already happened; later records only reconcile usage
            if usage:
                self._merge_usage(run, usage)
                self._record_late_usage(run)
            elif isinstance(event, BalanceUpdate):
                self._emit(run.session.id, "balance", {"credits": event.credits, "cost_cents": event.cost_cents})
            return None

        session = run.session
        msg = run.open_message

        if isinstance(event, BlockStart):
            if event.kind == "thinking":
                self._close_thinking(run)
                run.thinking = ThinkingBlock(signature=event.reasoning_signature)
            elif event.kind == "tool_use":
                call = ToolCall(name=event.tool_name or "unknown", reasoning_signature=event.reasoning_signature)
                if event.tool_id:
                    call.id = event.tool_id
                msg.tool_calls.append(call)
                run.tool_json = ""
                self._emit(session.id, "tool_start", {"id": call.id, "name": call.name})
            run.block = event.kind

        elif isinstance(event, TextDelta):
            msg.content += event.text
            self._emit(session.id, "text", event.text)

        elif isinstance(event, ThinkingDelta):
            if run.thinking is None:
                run.thinking = ThinkingBlock()
            run.thinking.text += event.text
            self._emit(session.id, "thinking", event.text)

        elif isinstance(event, SignatureDelta):
            if run.thinking is not None:
                run.thinking.signature = event.signature
            else:
                logger.debug("Signature without an open thinking block in %s", session.id)

        elif isinstance(event, ToolInputDelta):
            if run.block == "tool_use":
                run.tool_json += event.json_fragment

        elif isinstance(event, BlockStop):
            self._close_block(run)

        elif isinstance(event, DirectToolCall):
            call = ToolCall(
                name=event.tool_name,
                input=dict(event.tool_input or {}),
                reasoning_signature=event.reasoning_signature,
            )
            msg.tool_calls.append(call)
            self._emit(session.id, "tool_start", {"id": call.id, "name": call.name})

        elif isinstance(event, UsageOnly):
            self._merge_usage(run, event.usage)

        elif isinstance(event, BalanceUpdate):
            self._emit(session.id, "balance", {"credits": event.credits, "cost_cents": event.cost_cents})

        elif isinstance(event, MessageDelta):
            if usage:
                self._merge_usage(run, usage)
            if event.stop_reason == "error":
                return self._fail_turn(run, classify_stream_error(event.error))
            return self._finish_turn(run)

        elif isinstance(event, MessageStop):
            if usage:
                self._merge_usage(run, usage)
            return self._finish_turn(run)

        return None

    def _close_block(self, run: _SessionRun) -> None:
        if run.block == "tool_use":
            msg = run.open_message
            if msg.tool_calls:
                msg.tool_calls[-1].input = _parse_tool_input(run.tool_json)
            run.tool_json = ""
        elif run.block == "thinking":
            self._close_thinking(run)
        run.block = None

    def _close_thinking(self, run: _SessionRun) -> None:
        if run.thinking is not None:
            run.open_message.thinking_blocks.append(run.thinking)
            run.thinking = None

    def _merge_usage(self, run: _SessionRun, raw: dict[str, Any]) -> None:
        msg = run.open_message
        if msg is None:
            return
        run.turn_usage = run.turn_usage.merge(normalize_usage(run.vendor, raw))
        msg.usage = price(run.turn_usage, run.vendor_model, self.catalog.pricing)
        total = run.session.recompute_usage()
        self._emit(run.session.id, "usage", total.model_dump())

    # =========================================================================
    # Turn transitions (session lock held)
    # =========================================================================

    def _finish_turn(self, run: _SessionRun) -> str:
        """Complete the open message and decide what happens next."""
        run.turn_handled = True
        session = run.session
        if run.block is not None:
            self._close_block(run)
        self._close_thinking(run)
        run.release_subscription()

        msg = run.open_message
        msg.status = MessageStatus.COMPLETE
        self._record_turn(run, "ok")

        pending = [call for call in msg.tool_calls if call.status == ToolStatus.PENDING]
        if not pending:
            self._set_status(run, SessionStatus.IDLE)
            return _SETTLED

        cap = self.config.max_tool_loop_depth
        if cap is not None and session.loop_depth >= cap:
            logger.warning(
                "Tool loop limit (%d) reached for %s; stopping with %d pending call(s)",
                cap,
                session.id,
                len(pending),
            )
            for call in pending:
                call.status = ToolStatus.ERROR
                call.output = LOOP_LIMIT_OUTPUT
            self._emit(session.id, "loop_limit", {"depth": session.loop_depth, "limit": cap})
            self._set_status(run, SessionStatus.IDLE)
            return _SETTLED

        self._set_status(run, SessionStatus.TOOL_EXECUTION)
        return _RUN_TOOLS

    def _fail_turn(self, run: _SessionRun, error: EngineError) -> str:
        run.turn_handled = True
        session = run.session
        self._close_thinking(run)
        run.release_subscription()

        msg = run.open_message
        msg.status = MessageStatus.ERROR
        separator = "\n\n" if msg.content else ""
        msg.content += separator + format_error_markdown(error)
        for call in msg.tool_calls:
            if call.status in (ToolStatus.PENDING, ToolStatus.RUNNING):
                call.status = ToolStatus.ERROR
                call.output = str(error)

        logger.warning("Turn failed for %s: %s", session.id, error)
        self._record_turn(run, "error", error=str(error))
        self.telemetry.track_error(session.id, error.category, str(error))
        self._emit(session.id, "error", str(error))
        self._set_status(run, SessionStatus.ERROR)
        return _SETTLED

    def _record_turn(self, run: _SessionRun, status: str, error: str | None = None) -> None:
        session = run.session
        usage = run.open_message.usage or UsageSnapshot()
        self.ledger.record(usage, "chat", run.vendor, run.vendor_model, session_id=session.id)
        run.recorded_usage = usage
        self.telemetry.track_llm_call(
            session.id,
            run.vendor_model,
            run.vendor,
            input_tokens=usage.input_total,
            output_tokens=usage.output,
            cost=usage.cost,
            duration_ms=run.span.duration_ms if run.span else None,
        )
        if run.span is not None:
            self.telemetry.end_span(session.id, run.span, status=status, error=error)
            run.span = None

    def _record_late_usage(self, run: _SessionRun) -> None:
        """Charge counters that arrived after the turn was already recorded."""
        msg = run.open_message
        if msg is None or msg.usage is None or run.recorded_usage is None:
            return
        late = msg.usage.since(run.recorded_usage)
        if late.is_empty:
            return
        self.ledger.record(late, "chat", run.vendor, run.vendor_model, session_id=run.session.id)
        run.recorded_usage = msg.usage

    # =========================================================================
    # Tool execution
    # =========================================================================

    def _run_tools(self, run: _SessionRun, generation: int) -> None:
        with run.lock:
            if run.generation != generation or run.session.status != SessionStatus.TOOL_EXECUTION:
                return
            msg_index = run.open_index
            msg = run.open_message
            indices = [i for i, call in enumerate(msg.tool_calls) if call.status == ToolStatus.PENDING]
            work = []
            for i in indices:
                call = msg.tool_calls[i]
                call.status = ToolStatus.RUNNING
                work.append((call.name, dict(call.input)))
            session_id = run.session.id

        outcomes = self._execute_all(session_id, work)

        with run.lock:
            if run.generation != generation or run.session.status != SessionStatus.TOOL_EXECUTION:
                logger.info("Discarding %d tool result(s) for %s after abort", len(outcomes), session_id)
                return

            session = run.session
            msg = session.messages[msg_index]
            results = []
            for i, outcome in zip(indices, outcomes):
                call = msg.tool_calls[i]
                call.output = outcome.output
                call.status = ToolStatus.DONE if outcome.ok else ToolStatus.ERROR
                results.append(
                    ToolResult(
                        tool_use_id=call.id,
                        tool_name=call.name,
                        content=outcome.output,
                        is_error=not outcome.ok,
                    )
                )
                self._emit(
                    session.id,
                    "tool_end",
                    {
                        "id": call.id,
                        "name": call.name,
                        "input": call.input,
                        "output": outcome.output,
                        "ok": outcome.ok,
                    },
                )

            session.messages.append(Message(role="user", tool_results=results))
            session.loop_depth += 1
            run.open_index = None
            self._begin_turn(run)
        self._settle(run)

    def _execute_all(self, session_id: str, work: list[tuple[str, dict[str, Any]]]) -> list[ToolOutcome]:
        """Run tool calls in parallel, returning outcomes in call order."""
        if not work:
            return []

        def _execute_single(name: str, tool_input: dict[str, Any]) -> ToolOutcome:
            start = time.monotonic()
            try:
                outcome = self.executor.execute(name, tool_input)
            except Exception as e:
                logger.exception("Tool executor raised for %s", name)
                outcome = ToolOutcome(f"{type(e).__name__}: {e}", ok=False)
            self.telemetry.track_tool_call(
                session_id,
                name,
                (time.monotonic() - start) * 1000,
                ok=outcome.ok,
                error=None if outcome.ok else outcome.output[:200],
            )
            return outcome

        if len(work) == 1:
            # Fast path: no thread overhead for a single call
            return [_execute_single(*work[0])]

        max_workers = max(1, min(len(work), self.config.max_tool_workers))
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {pool.submit(_execute_single, name, tool_input): i for i, (name, tool_input) in enumerate(work)}
            indexed: dict[int, ToolOutcome] = {}
            for future in futures:
                indexed[futures[future]] = future.result()
        return [indexed[i] for i in range(len(work))]

    # =========================================================================
    # Abort and background
    # =========================================================================

    def abort(self, session_id: str) -> bool:
        """
        Stop the current turn. Returns False when there was nothing to stop.

        Streamed content so far is kept and marked aborted; unfinished tool
        calls are marked as errors and their results, if any, discarded.
        """
        run = self._run(session_id)
        with run.lock:
            status = run.session.status
            if status == SessionStatus.STREAMING:
                self._abort_streaming(run)
            elif status == SessionStatus.TOOL_EXECUTION:
                run.generation += 1
                self._error_unfinished_tools(run.open_message)
                self._set_status(run, SessionStatus.IDLE)
            else:
                return False
            logger.info("Aborted %s (%s)", session_id, status.value)
        self._settle(run)
        return True

    def _abort_streaming(self, run: _SessionRun) -> None:
        stale = StreamKey(run.session.id, run.generation)
        run.generation += 1
        run.turn_handled = True
        self.transport.abort(stale)
        run.release_subscription()

        self._close_thinking(run)
        msg = run.open_message
        msg.status = MessageStatus.ABORTED
        msg.content += ABORT_MARKER
        self._error_unfinished_tools(msg)
        if run.span is not None:
            self.telemetry.end_span(run.session.id, run.span, status="aborted")
            run.span = None
        self._set_status(run, SessionStatus.IDLE)

    def _error_unfinished_tools(self, msg: Message | None) -> None:
        if msg is None:
            return
        for call in msg.tool_calls:
            if call.status in (ToolStatus.PENDING, ToolStatus.RUNNING):
                call.status = ToolStatus.ERROR
                call.output = ABORTED_TOOL_OUTPUT

    def background(self, session_id: str, on_finished: Callable[[Session], None] | None = None) -> None:
        """
        Let a session finish on its own.

        Once it rests (Idle or Error) it is dropped from the engine and
        ``on_finished`` is called exactly once with the final session.
        """
        run = self._run(session_id)
        with run.lock:
            run.session.background = True
            run.on_finished = on_finished
            run.finished_notified = False
        self._settle(run)

    def attach(self, session_id: str) -> Session | None:
        """Bring a backgrounded session back to the foreground if it is still live."""
        with self._runs_lock:
            run = self._runs.get(session_id)
        if run is None:
            return None
        with run.lock:
            run.session.background = False
            run.on_finished = None
        return run.session

    def _settle(self, run: _SessionRun) -> None:
        """Hand a resting background session to its callback, once."""
        with run.lock:
            session = run.session
            if not session.background or session.status not in _RESTING or run.finished_notified:
                return
            run.finished_notified = True
            callback = run.on_finished
        with self._runs_lock:
            if self._runs.get(session.id) is run:
                del self._runs[session.id]
        logger.debug("Background session %s finished (%s)", session.id, session.status.value)
        if callback is not None:
            callback(session)

    # =========================================================================
    # One-shot calls
    # =========================================================================

    def complete(
        self,
        prompt: str | list[dict[str, Any]],
        model: str | None = None,
        system_prompt: str | None = None,
        strategy: str | None = None,
        tool_defs: list[dict[str, Any]] | None = None,
        tool_choice: dict[str, Any] | None = None,
        max_tokens: int | None = None,
        feature: str = "complete",
    ) -> CompletionResult:
        """
        Single non-streaming request through the same adapters.

        Args:
            prompt: User text, or canonical messages
            model: Catalog model id (ignored when ``strategy`` is set)
            strategy: "ghost" or "cheapest" to pick a fallback model
            tool_choice: e.g. ``{"type": "tool", "name": "classify"}``
            feature: Label the call is recorded under in the usage ledger

        Raises:
            NoAccessError: No credentials for the model
            OfflineError: Credentials could not be refreshed
            QuotaExceededError: Monthly budget reached
            EngineError: The request failed
        """
        access = self.resolver.resolve(model, strategy=strategy)
        if access is None:
            raise NoAccessError(model or strategy or self.config.default_model)
        if self.ledger.is_over_budget():
            raise QuotaExceededError(BUDGET_REACHED_TEXT)

        adapter = get_adapter(access.vendor, access.vendor_hint)
        messages = [{"role": "user", "content": prompt}] if isinstance(prompt, str) else prompt
        request = adapter.format_request(
            access.endpoint,
            access.api_key,
            access.model,
            messages,
            system_prompt=system_prompt,
            tool_defs=tool_defs,
            tool_choice=tool_choice,
            max_tokens=max_tokens or self.config.max_tokens,
            stream=False,
        )

        start = time.monotonic()
        data = self.transport.request(request.url, request.headers, request.encoded_body())
        usage = price(
            normalize_usage(access.vendor, adapter.extract_usage(data)),
            access.model,
            self.catalog.pricing,
        )
        self.ledger.record(usage, feature, access.vendor, access.model)
        self.telemetry.track_llm_call(
            feature,
            access.model,
            access.vendor,
            input_tokens=usage.input_total,
            output_tokens=usage.output,
            cost=usage.cost,
            duration_ms=(time.monotonic() - start) * 1000,
            stream=False,
        )
        return CompletionResult(
            text=adapter.extract_text(data) or "",
            usage=usage,
            model=access.model,
            vendor=access.vendor,
            raw=data,
        )


def _parse_tool_input(raw: str) -> dict[str, Any]:
    """Parse accumulated tool-input fragments. Anything but a JSON object yields {}."""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool input is not valid JSON; using {}: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}
