"""
Message Pipeline - Main Orchestrator

Ties the intake components together behind a single ingress call:

    inbound → self check → dedup → loop guard → buffer
    flush   → per-conversation turn queue → admission gate
    job     → history (user) → generator → history (assistant) → sender → loop guard

A conversation has at most one turn at the gate; the next flushed turn is
dispatched when the previous job finishes, so replies and history entries
keep arrival order within a conversation.

Every component is constructed once and owned by the pipeline. Failures in
one conversation are logged and never reach another conversation.
"""

import asyncio
import logging
import time
from collections import Counter, deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Set

from messaging.admission import AdmissionGate
from messaging.buffer import MessageBuffer
from messaging.dedup import DedupGuard, LoopGuard
from messaging.intake import InboundMessage, MessageIntake
from messaging.store import ConversationStore
from messaging.timing import SweepTimer
from utils.pipeline_config import PipelineConfig, RUNTIME_ADJUSTABLE

log = logging.getLogger(__name__)


class ReplyGenerator(Protocol):
    async def generate(self, conversation_id: str, text: str, history: List[Dict[str, str]]) -> str: ...


class ReplySender(Protocol):
    async def send(self, conversation_id: str, text: str) -> bool: ...


class MessagePipeline:
    """Main orchestrator for the intake pipeline."""

    def __init__(
        self,
        generator: ReplyGenerator,
        sender: ReplySender,
        config: Optional[PipelineConfig] = None,
        dedup: Optional[DedupGuard] = None,
        loop_guard: Optional[LoopGuard] = None,
        store: Optional[ConversationStore] = None,
        gate: Optional[AdmissionGate] = None,
        intake: Optional[MessageIntake] = None,
        clock: Callable[[], float] = time.time
    ):
        """Initialize the pipeline with optional component overrides."""
        self.config = config or PipelineConfig()
        self.generator = generator
        self.sender = sender

        self.dedup = dedup or DedupGuard(
            self.config.dedup_window_ms, self.config.dedup_max_entries, clock
        )
        self.loop_guard = loop_guard or LoopGuard(self.config.lockout_window_ms, clock)
        self.store = store or ConversationStore(
            self.config.max_history_per_chat, self.config.history_ttl_ms, clock
        )
        self.gate = gate or AdmissionGate(
            self.config.concurrency,
            self.config.min_concurrency,
            self.config.max_concurrency,
            clock
        )
        self.intake = intake or MessageIntake()
        self.buffer = MessageBuffer(
            self._on_flush,
            self.config.merge_window_ms,
            self.config.max_merged_messages,
            clock
        )
        self.sweeper = SweepTimer(
            {"dedup": self.dedup, "loop_guard": self.loop_guard, "history": self.store},
            self.config.sweep_interval_seconds
        )
        self._outcomes: Counter = Counter()

        # Conversations with a turn admitted or queued at the gate, and the
        # flushed turns waiting behind them in arrival order
        self._in_flight: Set[str] = set()
        self._waiting: Dict[str, Deque[InboundMessage]] = {}

    def start(self) -> None:
        """Start background work. Raises if the sweep timer cannot start."""
        self.sweeper.start()

    def handle_inbound(self, message: InboundMessage) -> str:
        """
        Accept one inbound event.

        Args:
            message: Event delivered by the platform

        Returns:
            Outcome label: "invalid", "self", "duplicate", "echo",
            "queued" or "error"
        """
        outcome = self._classify(message)
        self._outcomes[outcome] += 1
        return outcome

    def _classify(self, message: InboundMessage) -> str:
        reason = self.intake.validate(message)
        if reason:
            log.warning("Dropping inbound message %r: %s", message.message_id, reason)
            return "invalid"

        if message.sender_is_self:
            log.debug("[%s] Skipping own message %s", message.conversation_id, message.message_id)
            return "self"

        if self.dedup.is_duplicate(message.message_id):
            log.info("[%s] Duplicate message %s ignored", message.conversation_id, message.message_id)
            return "duplicate"

        self.dedup.mark_processed(message.message_id)

        if self.loop_guard.is_echo(message.conversation_id, message.text):
            log.info("[%s] Echo of own reply %s ignored", message.conversation_id, message.message_id)
            return "echo"

        try:
            self.buffer.add_message(message)
        except Exception:
            log.exception("[%s] Failed to queue message %s", message.conversation_id, message.message_id)
            return "error"

        return "queued"

    def _on_flush(self, message: InboundMessage) -> None:
        """Hand a flushed turn to the gate, or park it behind the conversation's running turn."""
        conversation_id = message.conversation_id
        if message.is_merged:
            log.info(
                "[%s] Merged %d messages into one turn",
                conversation_id, len(message.source_message_ids)
            )

        if conversation_id in self._in_flight:
            self._waiting.setdefault(conversation_id, deque()).append(message)
            log.debug(
                "[%s] Turn waiting for the previous reply (%d waiting)",
                conversation_id, len(self._waiting[conversation_id])
            )
            return

        self._dispatch(message)

    def _dispatch(self, message: InboundMessage) -> None:
        """Submit one turn to the gate. At most one turn per conversation is in flight."""
        conversation_id = message.conversation_id
        self._in_flight.add(conversation_id)
        try:
            admitted = self.gate.submit(
                lambda: self._run_turn(message),
                holder=conversation_id
            )
        except Exception:
            self._in_flight.discard(conversation_id)
            raise

        if not admitted:
            log.debug("[%s] Generation queued behind %d job(s)", conversation_id, self.gate.queued - 1)

    async def _run_turn(self, message: InboundMessage) -> None:
        try:
            await self._generate_reply(message)
        finally:
            self._next_turn(message.conversation_id)

    def _next_turn(self, conversation_id: str) -> None:
        """Release the conversation and dispatch its oldest waiting turn, if any."""
        self._in_flight.discard(conversation_id)

        waiting = self._waiting.get(conversation_id)
        if not waiting:
            return

        message = waiting.popleft()
        if not waiting:
            del self._waiting[conversation_id]

        try:
            self._dispatch(message)
        except Exception:
            dropped = 1 + len(self._waiting.pop(conversation_id, ()))
            log.exception("[%s] Could not dispatch %d waiting turn(s)", conversation_id, dropped)

    async def _generate_reply(self, message: InboundMessage) -> None:
        """Generate, record and send the reply for one turn."""
        conversation_id = message.conversation_id

        # Snapshot before recording the turn, so the generator sees prior context only
        history = self.store.get_history(conversation_id)
        self.store.append(conversation_id, "user", message.text)

        try:
            reply = await self.generator.generate(conversation_id, message.text, history)
        except Exception as e:
            log.error("[%s] Reply generation failed: %s", conversation_id, e)
            self._outcomes["generation_failed"] += 1
            return

        if not reply or not reply.strip():
            log.warning("[%s] Generator returned an empty reply", conversation_id)
            self._outcomes["empty_reply"] += 1
            return

        self.store.append(conversation_id, "assistant", reply)

        try:
            sent = await self.sender.send(conversation_id, reply)
        except Exception as e:
            log.error("[%s] Sending reply failed: %s", conversation_id, e)
            self._outcomes["send_failed"] += 1
            return

        if sent is False:
            log.error("[%s] Sender reported failure", conversation_id)
            self._outcomes["send_failed"] += 1
            return

        self.loop_guard.mark_sent(conversation_id, reply)
        self._outcomes["replied"] += 1

    def update_settings(self, **changes: Any) -> Dict[str, Any]:
        """
        Adjust runtime settings.

        Raises:
            ValueError: For unknown keys, settings fixed at startup
                (dedup_window_ms, lockout_window_ms, ...) or invalid values
        """
        fixed = [key for key in changes if key not in RUNTIME_ADJUSTABLE]
        if fixed:
            raise ValueError(f"Settings cannot be changed at runtime: {', '.join(sorted(fixed))}")

        updated = replace(self.config, **changes)

        self.buffer.update_settings(updated.merge_window_ms, updated.max_merged_messages)
        self.store.update_limits(updated.max_history_per_chat, updated.history_ttl_ms)
        self.gate.set_bounds(updated.min_concurrency, updated.max_concurrency)
        if "concurrency" in changes:
            self.gate.set_concurrency(changes["concurrency"])

        updated.concurrency = self.gate.concurrency
        self.config = updated
        return {key: getattr(updated, key) for key in changes}

    def get_stats(self) -> Dict[str, Any]:
        """Get pipeline statistics."""
        return {
            "outcomes": dict(self._outcomes),
            "queue_depths": self.buffer.queue_depths(),
            "waiting_turns": {cid: len(turns) for cid, turns in self._waiting.items()},
            "admission": self.gate.status(),
            "active_histories": self.store.active_conversations,
            "buffer": self.buffer.get_stats(),
            "store": self.store.get_stats(),
            "dedup": self.dedup.get_stats(),
            "loop_guard": self.loop_guard.get_stats(),
            "sweep": self.sweeper.get_stats()
        }

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Shutdown the pipeline gracefully."""
        await self.sweeper.stop()

        # Timers are cancelled inside clear_all() before the batches are dropped
        self.buffer.clear_all()
        waiting = sum(len(turns) for turns in self._waiting.values())
        self._waiting.clear()
        if waiting:
            log.info("Discarded %d turn(s) waiting behind running replies", waiting)
        self.gate.close()

        try:
            await asyncio.wait_for(self.gate.join(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(
                "Shutdown timed out with %d generation job(s) still running",
                self.gate.outstanding
            )

        log.debug("MessagePipeline shutdown complete")


def build_pipeline(
    config: Optional[PipelineConfig],
    generator: ReplyGenerator,
    sender: ReplySender,
    clock: Callable[[], float] = time.time
) -> MessagePipeline:
    """Construct every component from one PipelineConfig. Nothing is started."""
    return MessagePipeline(generator, sender, config=config, clock=clock)


async def init_pipeline(
    generator: ReplyGenerator,
    sender: ReplySender,
    config: Optional[PipelineConfig] = None
) -> MessagePipeline:
    """
    Build and start a pipeline.

    Must be awaited inside the running event loop. A failure to start the
    sweep timer propagates and should abort startup.
    """
    pipeline = build_pipeline(config, generator, sender)
    pipeline.start()
    log.info("Message pipeline started")
    return pipeline
