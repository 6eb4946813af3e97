"""Tests for the conversation scheduler (maturation engine)."""
import asyncio
import threading
import time
from dataclasses import replace

import pytest

from chipmaturer.application import TurnFailed, TurnRecorded, next_speaker_id
from chipmaturer.domain.exceptions import NotFoundError
from chipmaturer.domain.models import ConnectionStatus, Message, PairStatus


def _run(coro):
    return asyncio.run(coro)


class TestNextSpeaker:

    def test_first_speaks_on_empty_history(self, pair_ab):
        assert next_speaker_id(pair_ab, None) == pair_ab.first_connection_id

    def test_alternates(self, pair_ab):
        from_first = Message(id="1", pair_id=pair_ab.id, sender_id=pair_ab.first_connection_id,
                             receiver_id=pair_ab.second_connection_id, content="x", timestamp="t")
        from_second = Message(id="2", pair_id=pair_ab.id, sender_id=pair_ab.second_connection_id,
                              receiver_id=pair_ab.first_connection_id, content="y", timestamp="t")
        assert next_speaker_id(pair_ab, from_first) == pair_ab.second_connection_id
        assert next_speaker_id(pair_ab, from_second) == pair_ab.first_connection_id

    def test_other_side(self, pair_ab):
        assert pair_ab.other_side(pair_ab.first_connection_id) == pair_ab.second_connection_id
        assert pair_ab.other_side(pair_ab.second_connection_id) == pair_ab.first_connection_id


class TestRunTurn:

    def test_first_turn_then_second(self, scheduler, pair_ab, chat, gateway, db):
        first = _run(scheduler.run_turn(pair_ab.id))
        assert isinstance(first, TurnRecorded)
        assert chat.calls[0]["speaker"] == "Acct-A"

        second = _run(scheduler.run_turn(pair_ab.id))
        assert isinstance(second, TurnRecorded)
        assert chat.calls[1]["speaker"] == "Acct-B"

        acct_b = db.get_connection(pair_ab.second_connection_id)
        assert gateway.sent[0][0] == "acct-a"
        assert gateway.sent[0][1] == acct_b.phone
        assert db.get_pair(pair_ab.id).messages_count == 2

    def test_recorded_senders_never_repeat(self, scheduler, pair_ab, gateway, db):
        for turn in range(6):
            gateway.send_failure = "gateway down" if turn in (2, 3) else None
            _run(scheduler.run_turn(pair_ab.id))

        senders = [m.sender_id for m in db.get_pair_messages(pair_ab.id)]
        assert len(senders) == 4
        assert all(a != b for a, b in zip(senders, senders[1:]))

    def test_relay_failure_leaves_state_untouched(self, scheduler, pair_ab, gateway, db):
        gateway.send_failure = "instance not connected"

        result = _run(scheduler.run_turn(pair_ab.id))

        assert isinstance(result, TurnFailed)
        assert "instance not connected" in result.reason
        assert db.get_pair(pair_ab.id).messages_count == 0
        assert db.get_pair_messages(pair_ab.id) == []
        assert scheduler.notices[0].level == "error"

    def test_generation_failure_skips_relay(self, scheduler, pair_ab, chat, gateway, db):
        chat.error = "OpenAI API error: 500"

        result = _run(scheduler.run_turn(pair_ab.id))

        assert isinstance(result, TurnFailed)
        assert gateway.sent == []
        assert db.get_pair(pair_ab.id).messages_count == 0

    def test_history_is_tagged_for_speaker(self, scheduler, pair_ab, chat):
        _run(scheduler.run_turn(pair_ab.id))
        _run(scheduler.run_turn(pair_ab.id))
        _run(scheduler.run_turn(pair_ab.id))

        history = chat.calls[2]["history"]
        assert [entry.is_from_speaker for entry in history] == [True, False]

    def test_history_window(self, scheduler, pair_ab, chat):
        for _ in range(8):
            _run(scheduler.run_turn(pair_ab.id))
        assert len(chat.calls[-1]["history"]) == 5

    def test_prompt_resolution(self, scheduler, pair_ab, pairs, prompts, chat):
        _run(scheduler.run_turn(pair_ab.id))
        assert chat.calls[-1]["prompt"] == "Have a casual chat."

        prompts.add("Global", "Talk about the weather.", is_global=True)
        _run(scheduler.run_turn(pair_ab.id))
        assert chat.calls[-1]["prompt"] == "Talk about the weather."

        pairs.set_override_text(pair_ab.id, "Plan a barbecue.")
        pairs.toggle_prompt_override(pair_ab.id)
        _run(scheduler.run_turn(pair_ab.id))
        assert chat.calls[-1]["prompt"] == "Plan a barbecue."

    def test_deactivated_pair_does_not_run(self, scheduler, pair_ab, pairs, chat, gateway, db):
        pairs.toggle_active(pair_ab.id)

        result = _run(scheduler.run_turn(pair_ab.id))

        assert isinstance(result, TurnFailed)
        assert "not eligible" in result.reason
        assert chat.calls == []
        assert gateway.sent == []
        assert db.get_pair(pair_ab.id).messages_count == 0

    def test_pair_with_chip_in_error_does_not_run(self, scheduler, pair_ab, chat, gateway, db):
        db.update_connection(pair_ab.second_connection_id, status=ConnectionStatus.ERROR.value)

        result = _run(scheduler.run_turn(pair_ab.id))

        assert isinstance(result, TurnFailed)
        assert "not eligible" in result.reason
        assert chat.calls == []
        assert gateway.sent == []
        assert db.get_pair_messages(pair_ab.id) == []

    def test_unknown_pair(self, scheduler):
        with pytest.raises(NotFoundError):
            _run(scheduler.run_turn("missing"))


class TestLifecycle:

    def test_start_without_eligible_pairs_is_noop(self, scheduler, make_connection, pairs, db):
        a = make_connection("Acct-A")
        b = make_connection("Acct-B")
        pair = pairs.add(a.id, b.id)
        pairs.toggle_active(pair.id)
        before = db.get_pair(pair.id)

        notice = _run(scheduler.start())

        assert notice.level == "error"
        assert not scheduler.is_running
        assert len(scheduler.active_timers) == 0
        assert db.get_pair(pair.id) == before

    def test_start_requires_a_prompt(self, scheduler, pair_ab, db):
        notice = _run(scheduler.start())

        assert notice.title == "No prompt configured"
        assert not scheduler.is_running
        assert db.get_pair(pair_ab.id).status == PairStatus.STOPPED.value

    def test_disconnected_chip_makes_pair_ineligible(self, scheduler, pair_ab, db, prompts):
        prompts.add("Global", "Chat.", is_global=True)
        db.update_connection(pair_ab.second_connection_id, status=ConnectionStatus.ERROR.value)

        assert scheduler.eligible_pairs() == []
        assert _run(scheduler.start()).title == "No eligible pairs"

    def test_start_runs_turns_and_stop_cancels_everything(self, scheduler, pair_ab, prompts, db):
        prompts.add("Global", "Chat.", is_global=True)

        async def scenario():
            notice = await scheduler.start()
            assert notice.level == "success"
            assert scheduler.is_running
            assert set(scheduler.active_timers) == {pair_ab.id}
            assert db.get_pair(pair_ab.id).status == PairStatus.RUNNING.value

            for _ in range(200):
                await asyncio.sleep(0.01)
                if db.get_pair(pair_ab.id).messages_count >= 2:
                    break

            await scheduler.stop()
            recorded = db.get_pair(pair_ab.id).messages_count
            await asyncio.sleep(0.1)
            return recorded

        recorded = _run(scenario())

        assert recorded >= 2
        assert len(scheduler.active_timers) == 0
        assert not scheduler.is_running
        assert db.get_pair(pair_ab.id).messages_count == recorded
        assert db.get_pair(pair_ab.id).status == PairStatus.STOPPED.value

    def test_deactivating_pair_tears_down_its_timer(self, scheduler, pair_ab, pairs, prompts, db):
        prompts.add("Global", "Chat.", is_global=True)
        scheduler._settings = replace(
            scheduler._settings, min_interval=60, max_interval=60, initial_delay=60
        )

        async def scenario():
            await scheduler.start()
            task = scheduler.active_timers[pair_ab.id]
            pairs.toggle_active(pair_ab.id)
            await asyncio.sleep(0.01)
            paused_status = db.get_pair(pair_ab.id).status
            cancelled = task.cancelled()

            pairs.toggle_active(pair_ab.id)
            resumed = pair_ab.id in scheduler.active_timers
            await scheduler.stop()
            return paused_status, cancelled, resumed

        paused_status, cancelled, resumed = _run(scenario())

        assert paused_status == PairStatus.PAUSED.value
        assert cancelled
        assert resumed

    def test_stats(self, scheduler, pair_ab):
        _run(scheduler.run_turn(pair_ab.id))
        stats = scheduler.stats()
        assert stats["total_messages"] == 1
        assert stats["is_running"] is False
        assert stats["running_timers"] == 0

    def test_pair_stops_itself_when_chip_disconnects(self, scheduler, pair_ab, prompts, db):
        prompts.add("Global", "Chat.", is_global=True)

        async def scenario():
            await scheduler.start()
            for _ in range(200):
                await asyncio.sleep(0.01)
                if db.get_pair(pair_ab.id).messages_count >= 1:
                    break

            db.update_connection(pair_ab.second_connection_id, status=ConnectionStatus.ERROR.value)
            for _ in range(200):
                await asyncio.sleep(0.01)
                if pair_ab.id not in scheduler.active_timers:
                    break

            status = db.get_pair(pair_ab.id).status
            titles = [n.title for n in scheduler.notices]
            still_scheduled = pair_ab.id in scheduler.active_timers
            await scheduler.stop()
            return status, titles, still_scheduled

        status, titles, still_scheduled = _run(scenario())

        assert not still_scheduled
        assert status == PairStatus.STOPPED.value
        assert "Pair stopped" in titles


class TestCancellationDuringRelay:

    @pytest.fixture
    def slow_gateway(self, gateway, monkeypatch):
        relay_started = threading.Event()
        send_text = gateway.send_text

        def slow_send_text(instance_name, number, text):
            relay_started.set()
            time.sleep(0.3)
            return send_text(instance_name, number, text)

        monkeypatch.setattr(gateway, "send_text", slow_send_text)
        return relay_started

    @staticmethod
    async def _wait_for(event):
        for _ in range(200):
            if event.is_set():
                return
            await asyncio.sleep(0.01)

    def test_stop_records_message_already_relayed(self, scheduler, pair_ab, prompts, gateway, db,
                                                  slow_gateway):
        prompts.add("Global", "Chat.", is_global=True)

        async def scenario():
            await scheduler.start()
            await self._wait_for(slow_gateway)
            await scheduler.stop()
            return db.get_pair(pair_ab.id).messages_count

        recorded = _run(scenario())

        assert len(gateway.sent) == 1
        assert recorded == 1
        assert db.get_pair_messages(pair_ab.id)[0].content == gateway.sent[0][2]
        assert db.get_pair(pair_ab.id).status == PairStatus.STOPPED.value

    def test_pausing_pair_records_message_already_relayed(self, scheduler, pair_ab, pairs, prompts,
                                                          gateway, db, slow_gateway):
        prompts.add("Global", "Chat.", is_global=True)

        async def scenario():
            await scheduler.start()
            await self._wait_for(slow_gateway)
            pairs.toggle_active(pair_ab.id)
            for _ in range(100):
                await asyncio.sleep(0.01)
                if db.get_pair(pair_ab.id).messages_count:
                    break
            await scheduler.stop()

        _run(scenario())

        assert len(gateway.sent) == 1
        assert db.get_pair(pair_ab.id).messages_count == 1
        assert not db.get_pair(pair_ab.id).is_active
