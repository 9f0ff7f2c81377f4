"""Dual-stream comparison orchestrator.

One request fans out to two slot tasks (A and B). Each slot task owns its
SlotState and pushes immutable event snapshots into its own bounded queue. A
single aggregator selects over both queues, forwards events to the delivery
sink, and commits the joint outcome to history exactly once when both slots
are terminal, or when the run is aborted by disconnect, timeout or shutdown.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from twinstream.backends.factory import BackendFactory
from twinstream.config import EngineConfig
from twinstream.core.catalog import ModelRegistry
from twinstream.core.errors import StorageError, TransportError, ValidationError
from twinstream.core.types import Slot
from twinstream.engine.events import StreamEvent
from twinstream.engine.state import SlotState
from twinstream.log import bind_request, get_logger
from twinstream.storage.history_repo import HistoryRepository
from twinstream.storage.models import ComparisonOutcome

logger = get_logger(__name__)

EventSink = Callable[[StreamEvent], Awaitable[None]]
CommitHook = Callable[[ComparisonOutcome, Optional[str]], Awaitable[None]]

DISCONNECT_REASON = "client disconnected"


@dataclass(frozen=True, slots=True)
class ComparisonRequest:
    prompt: str
    model_id1: str
    model_id2: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def model_for(self, slot: Slot) -> str:
        return self.model_id1 if slot == Slot.A else self.model_id2


class ComparisonRun:
    """Handle on one in-flight comparison."""

    def __init__(
        self,
        request: ComparisonRequest,
        orchestrator: ComparisonOrchestrator,
        emit: EventSink,
    ):
        self.request = request
        self._orch = orchestrator
        self._emit = emit
        self._config = orchestrator.config
        self._states = {
            slot: SlotState(slot, request.model_for(slot), orchestrator.registry)
            for slot in Slot
        }
        self._queues: dict[Slot, asyncio.Queue[StreamEvent]] = {
            slot: asyncio.Queue(maxsize=self._config.channel_buffer) for slot in Slot
        }
        self._abort = asyncio.Event()
        self._abort_reason: Optional[str] = None
        self._transport_lost = False
        self._sink_error: Optional[Exception] = None
        self._in_flight: dict[Slot, Optional[StreamEvent]] = {slot: None for slot in Slot}
        self._committed = False
        self._task: Optional[asyncio.Task[ComparisonOutcome]] = None
        self.outcome: Optional[ComparisonOutcome] = None
        self.record_id: Optional[str] = None

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def state(self, slot: Slot) -> SlotState:
        return self._states[slot]

    def cancel(self, reason: str = DISCONNECT_REASON) -> None:
        """Stop both slots; still-active slots fail with ``reason``. Safe to call repeatedly."""
        if self._abort_reason is None and not self.done:
            self._abort_reason = reason
        self._abort.set()

    async def wait(self) -> ComparisonOutcome:
        if self._task is None:
            raise RuntimeError("comparison has not been started")
        return await asyncio.shield(self._task)

    def _launch(self) -> asyncio.Task[ComparisonOutcome]:
        self._task = asyncio.create_task(
            self._execute(), name=f"comparison-{self.request_id}"
        )
        return self._task

    async def _execute(self) -> ComparisonOutcome:
        bind_request(self.request_id)
        logger.info(
            "comparison_started",
            model1=self.request.model_id1,
            model2=self.request.model_id2,
            prompt_length=len(self.request.prompt),
        )
        slot_tasks = {
            slot: asyncio.create_task(self._run_slot(slot), name=f"slot-{slot}-{self.request_id}")
            for slot in Slot
        }
        leftovers: list[StreamEvent] = []
        cancelled = False
        try:
            await self._aggregate(leftovers)
        except asyncio.CancelledError:
            cancelled = True
            self._set_abort("comparison cancelled")

        if self._abort_reason is not None:
            await self._stop_slots(slot_tasks, leftovers)
        else:
            await asyncio.gather(*slot_tasks.values(), return_exceptions=True)

        outcome = await self._commit()
        if cancelled:
            raise asyncio.CancelledError()
        if self._sink_error is not None:
            raise self._sink_error
        return outcome

    async def _aggregate(self, leftovers: list[StreamEvent]) -> None:
        """Forward events from both slot queues until both slots are terminal."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.request_timeout
        open_slots = set(Slot)
        getters: dict[asyncio.Task[StreamEvent], Slot] = {}
        abort_wait = asyncio.create_task(self._abort.wait())
        try:
            while open_slots:
                waiting = set(getters.values())
                for slot in open_slots - waiting:
                    getters[asyncio.create_task(self._queues[slot].get())] = slot

                remaining = deadline - loop.time()
                done: set[asyncio.Future] = set()
                if remaining > 0:
                    done, _ = await asyncio.wait(
                        {*getters, abort_wait},
                        timeout=remaining,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                if abort_wait in done:
                    return
                if not done:
                    self._set_abort(self._timeout_reason())
                    return

                for getter in done:
                    slot = getters.pop(getter)
                    event = getter.result()
                    if not await self._deliver(event, abort_wait, deadline):
                        return
                    if event.is_terminal:
                        open_slots.discard(slot)
        except TransportError as e:
            self._transport_lost = True
            self._set_abort(f"{DISCONNECT_REASON}: {e}" if str(e) else DISCONNECT_REASON)
        except Exception as e:
            logger.error("event_sink_failed", error=repr(e))
            self._transport_lost = True
            self._sink_error = e
            self._set_abort(f"event delivery failed: {type(e).__name__}")
        finally:
            abort_wait.cancel()
            for getter in getters:
                if getter.done() and not getter.cancelled():
                    leftovers.append(getter.result())
                else:
                    getter.cancel()

    async def _deliver(
        self, event: StreamEvent, abort_wait: asyncio.Task, deadline: float
    ) -> bool:
        """Hand one event to the sink while still watching for abort and the deadline.

        Returns False once the run has to stop. A sink that is still busy at
        that point gets ``flush_timeout`` to finish before it is abandoned and
        treated as gone.
        """
        loop = asyncio.get_running_loop()
        sending = asyncio.create_task(self._emit(event))
        try:
            done, _ = await asyncio.wait(
                {sending, abort_wait},
                timeout=max(deadline - loop.time(), 0),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if sending in done:
                sending.result()
                return True
            if abort_wait not in done:
                self._set_abort(self._timeout_reason())

            done, _ = await asyncio.wait({sending}, timeout=self._config.flush_timeout)
            if sending in done:
                sending.result()
            else:
                self._transport_lost = True
                logger.warning("event_delivery_stalled", slot=event.slot, event_type=event.type)
            return False
        finally:
            if not sending.done():
                sending.cancel()

    async def _run_slot(self, slot: Slot) -> None:
        state = self._states[slot]
        prompt = self.request.prompt
        backend = None
        await self._publish(slot, state.start(prompt))
        try:
            try:
                backend = self._orch.backend_factory(self._orch.registry.require(state.model_id))
                stream = backend.stream(prompt)
                try:
                    while True:
                        try:
                            async with asyncio.timeout(self._config.backend_timeout):
                                chunk = await anext(stream)
                        except StopAsyncIteration:
                            break
                        if chunk.usage is not None:
                            state.record_usage(chunk.usage)
                        if chunk.text:
                            await self._publish(slot, state.append(chunk.text))
                finally:
                    await stream.aclose()
            except TimeoutError:
                logger.warning("slot_backend_timeout", slot=slot, model=state.model_id)
                event = state.fail(
                    f"{state.model_id} did not respond within {self._config.backend_timeout:g}s"
                )
            except Exception as e:
                logger.warning("slot_backend_error", slot=slot, model=state.model_id, error=str(e))
                event = state.fail(str(e) or type(e).__name__)
            else:
                event = state.complete(self._config.prefer_reported_usage)
                logger.debug(
                    "slot_completed",
                    slot=slot,
                    model=state.model_id,
                    output_tokens=state.tokens.output,
                    cost=state.cost,
                )
            await self._publish(slot, event)
        finally:
            if backend is not None:
                await backend.aclose()

    async def _publish(self, slot: Slot, event: StreamEvent) -> None:
        # the state has already advanced; keep the event until the queue takes it
        self._in_flight[slot] = event
        await self._queues[slot].put(event)
        self._in_flight[slot] = None

    async def _stop_slots(
        self, slot_tasks: dict[Slot, asyncio.Task[None]], leftovers: list[StreamEvent]
    ) -> None:
        """Abort path: cancel slots, flush what they produced, fail whatever is still active."""
        for task in slot_tasks.values():
            task.cancel()
        await asyncio.gather(*slot_tasks.values(), return_exceptions=True)

        for event in leftovers:
            await self._emit_quietly(event)
        for slot in Slot:
            queue = self._queues[slot]
            while not queue.empty():
                await self._emit_quietly(queue.get_nowait())
            pending, self._in_flight[slot] = self._in_flight[slot], None
            if pending is not None:
                await self._emit_quietly(pending)

        reason = self._abort_reason or DISCONNECT_REASON
        for state in self._states.values():
            if state.is_active:
                await self._emit_quietly(state.fail(reason))
        logger.info("comparison_aborted", reason=reason)

    async def _emit_quietly(self, event: StreamEvent) -> None:
        if self._transport_lost:
            return
        try:
            async with asyncio.timeout(self._config.flush_timeout):
                await self._emit(event)
        except TimeoutError:
            self._transport_lost = True
            logger.warning("event_delivery_stalled", slot=event.slot, event_type=event.type)
        except TransportError:
            self._transport_lost = True
        except Exception as e:
            self._transport_lost = True
            logger.error("event_sink_failed", error=repr(e))
            if self._sink_error is None:
                self._sink_error = e

    def _set_abort(self, reason: str) -> None:
        if self._abort_reason is None:
            self._abort_reason = reason
        self._abort.set()

    def _timeout_reason(self) -> str:
        return f"Comparison timed out after {self._config.request_timeout:g}s"

    def _build_outcome(self) -> ComparisonOutcome:
        a, b = self._states[Slot.A], self._states[Slot.B]
        return ComparisonOutcome(
            request_id=self.request_id,
            prompt=self.request.prompt,
            model_id1=a.model_id,
            model_id2=b.model_id,
            final_text1=a.text if a.succeeded else None,
            final_text2=b.text if b.succeeded else None,
            cost1=a.cost if a.succeeded else None,
            cost2=b.cost if b.succeeded else None,
            error1=a.error,
            error2=b.error,
            tokens1=a.tokens.total,
            tokens2=b.tokens.total,
        )

    async def _commit(self) -> ComparisonOutcome:
        if self._committed:
            return self.outcome  # type: ignore[return-value]
        self._committed = True
        self.outcome = outcome = self._build_outcome()

        try:
            self.record_id = await self._orch.history.create(outcome)
        except StorageError as e:
            # the consumer already has the streamed result
            logger.error("comparison_commit_failed", error=str(e))
        else:
            logger.info(
                "comparison_committed",
                record_id=self.record_id,
                failed1=outcome.failed1,
                failed2=outcome.failed2,
                total_cost=outcome.total_cost,
            )

        for hook in self._orch.on_commit:
            try:
                await hook(outcome, self.record_id)
            except Exception as e:
                logger.error("commit_hook_error", hook=getattr(hook, "__name__", repr(hook)), error=str(e))
        return outcome


class ComparisonOrchestrator:
    """Validates requests and runs comparisons against the model catalog."""

    def __init__(
        self,
        registry: ModelRegistry,
        backend_factory: BackendFactory,
        history: HistoryRepository,
        config: EngineConfig | None = None,
    ):
        self.registry = registry
        self.backend_factory = backend_factory
        self.history = history
        self.config = config or EngineConfig()
        self.on_commit: list[CommitHook] = []
        self._runs: set[ComparisonRun] = set()

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    def validate(
        self,
        prompt: Optional[str],
        model_id1: Optional[str],
        model_id2: Optional[str],
        request_id: Optional[str] = None,
    ) -> ComparisonRequest:
        """Check a raw request. Raises ValidationError (or UnknownModel) before anything starts."""
        if prompt is None or not prompt.strip():
            raise ValidationError("Prompt must not be empty")
        if not model_id1 or not model_id2:
            raise ValidationError("Two model ids are required")
        self.registry.require(model_id1)
        self.registry.require(model_id2)
        if request_id:
            return ComparisonRequest(prompt, model_id1, model_id2, request_id)
        return ComparisonRequest(prompt, model_id1, model_id2)

    def start(self, request: ComparisonRequest, emit: EventSink) -> ComparisonRun:
        """Launch a comparison in the background and return its handle."""
        self.validate(request.prompt, request.model_id1, request.model_id2)
        run = ComparisonRun(request, self, emit)
        task = run._launch()
        self._runs.add(run)
        task.add_done_callback(lambda _t: self._runs.discard(run))
        return run

    async def run(self, request: ComparisonRequest, emit: EventSink) -> ComparisonOutcome:
        run = self.start(request, emit)
        try:
            return await run.wait()
        except asyncio.CancelledError:
            run.cancel("comparison cancelled")
            raise

    async def shutdown(self) -> None:
        """Abort every in-flight comparison and wait for their commits."""
        runs = list(self._runs)
        for run in runs:
            run.cancel("server shutting down")
        if runs:
            await asyncio.gather(*(r.wait() for r in runs), return_exceptions=True)
        logger.info("orchestrator_shutdown", aborted=len(runs))
