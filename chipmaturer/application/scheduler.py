"""
Conversation Scheduler - The Maturation Engine
===============================================

Owns one asyncio task per running pair. Each task sleeps, runs a turn, and
sleeps again for a random interval, so turns of a single pair never overlap.

A turn:
1. picks the speaker by alternation from the last recorded message
2. resolves the prompt (pair override > global prompt > default)
3. asks the chat service for the next message
4. relays it through the gateway, speaker instance -> receiver phone
5. records the message and bumps the pair counter, only if the relay succeeded

Blocking HTTP calls run in worker threads; every store write happens back on
the event loop between awaits. Steps 4 and 5 run in a shielded task, so
cancelling a timer mid-relay still records what the gateway delivered.
"""

import asyncio
import logging
import random
import uuid
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Union

from ..domain.exceptions import ConfigurationError, NotFoundError, RemoteCallError
from ..domain.models import (
    ChipPair,
    Connection,
    Message,
    Notice,
    PairStatus,
    utc_now,
)
from ..infrastructure.config import SchedulerSettings, get_settings
from ..infrastructure.llm import ChatService, GeneratedMessage, HistoryEntry
from ..infrastructure.persistence import Database
from ..infrastructure.whatsapp import GatewayFailure, MessagingProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnRecorded:
    message: Message


@dataclass(frozen=True)
class TurnFailed:
    pair_id: str
    reason: str


TurnResult = Union[TurnRecorded, TurnFailed]


def next_speaker_id(pair: ChipPair, last_message: Optional[Message]) -> str:
    """The first chip opens and answers the second; the second answers the first."""
    if last_message is None or last_message.sender_id == pair.second_connection_id:
        return pair.first_connection_id
    return pair.second_connection_id


def is_eligible(pair: ChipPair, connections: Mapping[str, Connection]) -> bool:
    """Active, not paused, and both chips connected."""
    if not pair.is_active or pair.is_paused:
        return False
    first = connections.get(pair.first_connection_id)
    second = connections.get(pair.second_connection_id)
    return bool(first and second and first.is_active and second.is_active)


class ConversationScheduler:
    """
    Maturation engine with an explicit start/stop lifecycle.

    USAGE:
        scheduler = ConversationScheduler(db, ChatService(), EvolutionGateway())
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    MAX_NOTICES = 100

    def __init__(
        self,
        db: Database,
        chat_service: ChatService,
        gateway: MessagingProvider,
        settings: Optional[SchedulerSettings] = None,
        rng: Optional[random.Random] = None,
    ):
        self._db = db
        self._chat = chat_service
        self._gateway = gateway
        self._settings = settings or get_settings().scheduler
        self._rng = rng or random.Random()

        self._running = False
        self._timers: Dict[str, asyncio.Task] = {}
        self._in_flight: set = set()
        self._deliveries: set = set()
        self._notices: deque = deque(maxlen=self.MAX_NOTICES)

    # ── State ──────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_timers(self) -> Mapping[str, asyncio.Task]:
        return MappingProxyType(self._timers)

    @property
    def notices(self) -> List[Notice]:
        """Recent notices, newest first."""
        return list(reversed(self._notices))

    def _notify(self, level: str, title: str, message: str) -> Notice:
        notice = Notice(level=level, title=title, message=message)
        self._notices.append(notice)
        log = logger.warning if level == "error" else logger.info
        log(f"{title}: {message}")
        return notice

    def next_interval(self) -> float:
        return self._rng.uniform(self._settings.min_interval, self._settings.max_interval)

    def eligible_pairs(self) -> List[ChipPair]:
        connections = {c.id: c for c in self._db.get_all_connections()}
        return [p for p in self._db.get_all_pairs() if is_eligible(p, connections)]

    def effective_prompt(self, pair: ChipPair) -> str:
        override = pair.override_prompt
        if override:
            return override
        global_prompt = self._db.get_global_prompt()
        if global_prompt and global_prompt.content.strip():
            return global_prompt.content
        return self._settings.default_prompt

    def stats(self) -> dict:
        stats = self._db.get_stats()
        stats["is_running"] = self._running
        stats["running_timers"] = len(self._timers)
        return stats

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> Notice:
        """Schedule every eligible pair. No-op with a notice when there are none."""
        if self._running:
            return self._notify("info", "Already running", "The maturation engine is already running.")

        pairs = self.eligible_pairs()
        if not pairs:
            return self._notify(
                "error",
                "No eligible pairs",
                "Configure at least one active pair of connected chips to start the engine.",
            )

        if self._db.get_global_prompt() is None and not any(p.override_prompt for p in pairs):
            return self._notify(
                "error",
                "No prompt configured",
                "Set a global prompt or a pair-specific prompt before starting.",
            )

        self._running = True
        for pair in pairs:
            self._schedule(pair.id, self._settings.initial_delay)

        return self._notify(
            "success",
            "Maturation started",
            f"Automatic conversations running for {len(pairs)} pair(s).",
        )

    async def stop(self) -> Notice:
        """Cancel every timer, wait out relays under way, then mark all pairs stopped."""
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

        was_running = self._running
        self._running = False

        for pair in self._db.get_all_pairs():
            if pair.status != PairStatus.STOPPED.value:
                self._db.update_pair(pair.id, status=PairStatus.STOPPED.value)

        if not was_running:
            return self._notify("info", "Not running", "The maturation engine was not running.")
        return self._notify("success", "Maturation stopped", "Automatic conversations disabled.")

    def pause_pair(self, pair_id: str) -> bool:
        """Tear down a pair's timer and mark it paused. Returns True if a timer was cancelled."""
        task = self._timers.pop(pair_id, None)
        if task is not None:
            task.cancel()
        self._db.update_pair(pair_id, status=PairStatus.PAUSED.value)
        return task is not None

    def cancel_pair(self, pair_id: str) -> bool:
        """Tear down a pair's timer without touching the stored pair."""
        task = self._timers.pop(pair_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def resume_pair(self, pair_id: str) -> bool:
        """Schedule a pair again if the engine is running and the pair is eligible."""
        if not self._running or pair_id in self._timers:
            return False
        pair = self._db.get_pair(pair_id)
        if pair is None:
            return False
        connections = {c.id: c for c in self._db.get_all_connections()}
        if not is_eligible(pair, connections):
            return False
        self._schedule(pair_id, self._settings.initial_delay)
        return True

    def _schedule(self, pair_id: str, first_delay: float) -> None:
        self._db.update_pair(pair_id, status=PairStatus.RUNNING.value)
        task = asyncio.get_running_loop().create_task(
            self._pair_loop(pair_id, first_delay), name=f"maturation-pair-{pair_id}"
        )
        self._timers[pair_id] = task
        task.add_done_callback(lambda t, pid=pair_id: self._forget(pid, t))

    def _forget(self, pair_id: str, task: asyncio.Task) -> None:
        if self._timers.get(pair_id) is task:
            del self._timers[pair_id]

    async def _pair_loop(self, pair_id: str, first_delay: float) -> None:
        delay = first_delay
        while True:
            await asyncio.sleep(delay)

            pair = self._db.get_pair(pair_id)
            connections = {c.id: c for c in self._db.get_all_connections()}
            if pair is None or not is_eligible(pair, connections):
                if pair is not None and pair.status == PairStatus.RUNNING.value:
                    self._db.update_pair(pair_id, status=PairStatus.STOPPED.value)
                    self._notify(
                        "error",
                        "Pair stopped",
                        f"Pair {pair_id} is no longer eligible (inactive or disconnected chip).",
                    )
                return

            try:
                await self.run_turn(pair_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error in turn for pair {pair_id}: {e}")
                self._notify("error", "Conversation error", f"Unexpected error for pair {pair_id}: {e}")

            delay = self.next_interval()

    # ── Turn ───────────────────────────────────────────────────────

    def _fail(self, pair_id: str, reason: str, label: str = "") -> TurnFailed:
        self._notify("error", "Conversation error", f"{label or pair_id}: {reason}")
        return TurnFailed(pair_id=pair_id, reason=reason)

    async def run_turn(self, pair_id: str) -> TurnResult:
        """
        Run one conversation turn for a pair.

        Raises:
            NotFoundError: the pair does not exist.

        Returns:
            TurnRecorded with the stored message, or TurnFailed with the reason.
            A failed turn leaves history and counters untouched.
        """
        pair = self._db.get_pair(pair_id)
        if pair is None:
            raise NotFoundError(f"Pair {pair_id} not found")

        if pair_id in self._in_flight:
            return TurnFailed(pair_id=pair_id, reason="A turn is already in progress for this pair")

        connections = {c.id: c for c in self._db.get_all_connections()}
        if pair.first_connection_id not in connections or pair.second_connection_id not in connections:
            return self._fail(pair_id, "Pair references a missing connection")
        if not is_eligible(pair, connections):
            return self._fail(pair_id, "Pair is not eligible to run (inactive pair or disconnected chip)")

        speaker_id = next_speaker_id(pair, self._db.get_last_message(pair_id))
        speaker = connections[speaker_id]
        receiver = connections[pair.other_side(speaker_id)]
        label = f"{speaker.name} -> {receiver.name}"

        prompt = self.effective_prompt(pair)
        history = [
            HistoryEntry(content=m.content, is_from_speaker=m.sender_id == speaker.id)
            for m in self._db.get_pair_messages(pair_id, limit=self._settings.history_window)
        ]

        self._in_flight.add(pair_id)
        delivery = None
        try:
            try:
                generated = await asyncio.to_thread(
                    self._chat.generate, speaker.name, prompt, history
                )
            except (RemoteCallError, ConfigurationError) as e:
                return self._fail(pair_id, f"Message generation failed for {speaker.name}: {e}", label)

            delivery = asyncio.get_running_loop().create_task(
                self._deliver(pair_id, speaker, receiver, generated, label)
            )
        finally:
            if delivery is None:
                self._in_flight.discard(pair_id)

        self._deliveries.add(delivery)
        delivery.add_done_callback(self._deliveries.discard)
        # Cancelling the caller must not drop a message the gateway already has
        return await asyncio.shield(delivery)

    async def _deliver(
        self,
        pair_id: str,
        speaker: Connection,
        receiver: Connection,
        generated: GeneratedMessage,
        label: str,
    ) -> TurnResult:
        """Relay a generated message and record it if the gateway accepted it."""
        try:
            try:
                relay = await asyncio.to_thread(
                    self._gateway.send_text, speaker.instance_name, receiver.phone, generated.text
                )
            except ConfigurationError as e:
                return self._fail(pair_id, f"Relay failed: {e}", label)

            if isinstance(relay, GatewayFailure):
                return self._fail(pair_id, f"Relay failed: {relay.error}", label)

            message = Message(
                id=uuid.uuid4().hex,
                pair_id=pair_id,
                sender_id=speaker.id,
                receiver_id=receiver.id,
                content=generated.text,
                timestamp=utc_now(),
                model=generated.model,
                usage=generated.usage,
            )
            if not self._db.record_turn(message):
                return self._fail(pair_id, "Pair was removed before the message could be recorded", label)
        finally:
            self._in_flight.discard(pair_id)

        logger.info(f"Message relayed: {label}")
        return TurnRecorded(message=message)
