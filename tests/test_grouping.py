from __future__ import annotations

import asyncio
import random

import pytest

from conftest import FakeClock, FlakyStore, build_service, queue_scenario
from soloq.entities import CandidateGroup, PlayerState, QueueEntry
from soloq.errors import StoreUnavailable
from soloq.grouping import form_groups


def _entries(*rows):
    return [QueueEntry(player_id, skill, enqueued_at) for player_id, skill, enqueued_at in rows]


def _ids(groups):
    return [[entry.player_id for entry in group] for group in groups]


def test_lowest_spread_group_is_formed_and_outlier_left():
    entries = _entries(("A", 10, 0), ("B", 12, 1), ("C", 50, 2), ("D", 11, 3), ("E", 13, 4))
    groups = form_groups(entries, group_size=4)
    assert len(groups) == 1
    assert {entry.player_id for entry in groups[0]} == {"A", "B", "D", "E"}


def test_not_enough_players_forms_nothing():
    entries = _entries(("A", 10, 0), ("B", 12, 1), ("C", 11, 2))
    assert form_groups(entries, group_size=4) == []


def test_grouping_is_deterministic_for_a_snapshot():
    rng = random.Random(3)
    entries = [QueueEntry(f"p{i}", rng.randint(800, 2400), float(i), rng.randint(0, 2)) for i in range(23)]
    expected = _ids(form_groups(entries, group_size=5))
    shuffled = list(entries)
    rng.shuffle(shuffled)
    assert _ids(form_groups(shuffled, group_size=5)) == expected
    assert len(expected) == 4


def test_groups_never_share_players():
    rng = random.Random(11)
    entries = [QueueEntry(f"p{i}", rng.randint(0, 100), float(i)) for i in range(40)]
    groups = form_groups(entries, group_size=5)
    members = [entry.player_id for group in groups for entry in group]
    assert len(members) == len(set(members)) == 40


def test_prior_attempts_seed_the_first_group():
    entries = [
        QueueEntry("early", 1000, 0.0),
        QueueEntry("close", 1010, 1.0),
        QueueEntry("retry", 2000, 5.0, attempts=1),
        QueueEntry("peer", 1990, 6.0),
    ]
    groups = form_groups(entries, group_size=2)
    assert _ids(groups) == [["retry", "peer"], ["early", "close"]]


def test_spread_ties_go_to_earliest_enqueue():
    entries = _entries(("seed", 100, 0), ("late", 110, 9), ("early", 90, 3))
    groups = form_groups(entries, group_size=2)
    assert _ids(groups) == [["seed", "early"]]


def test_avoided_member_set_is_not_proposed():
    entries = _entries(("A", 10, 0), ("B", 12, 1), ("C", 50, 2))
    groups = form_groups(entries, group_size=2, avoid={frozenset({"A", "B"})})
    assert groups == []


def test_tick_hands_groups_to_ready_check_and_empties_pool():
    async def scenario():
        clock = FakeClock()
        service = build_service(group_size=4, clock=clock)
        await queue_scenario(service, clock)
        sessions = await service.tick()
        states = {player_id: await service.registry.get_state(player_id) for player_id in "ABCDE"}
        second = await service.tick()
        return service, sessions, states, second

    service, sessions, states, second = asyncio.run(scenario())
    assert len(sessions) == 1
    assert set(sessions[0].member_ids) == {"A", "B", "D", "E"}
    assert sessions[0].group.spread == 3
    assert [entry.player_id for entry in service.pool.snapshot()] == ["C"]
    assert states["C"] is PlayerState.WAITING
    assert all(states[player_id] is PlayerState.READY_CHECKING for player_id in "ABDE")
    assert second == []
    assert len(service.gateway.prompts) == 1


def test_hand_off_rolls_back_when_a_member_left():
    async def scenario():
        clock = FakeClock()
        service = build_service(group_size=4, clock=clock)
        await queue_scenario(service, clock)
        members = [entry for entry in service.pool.snapshot() if entry.player_id != "C"]
        # D leaves after the snapshot was taken but before the hand-off.
        await service.leave("D")
        session = await service.ready_checks.propose(CandidateGroup.build(members, created_at=clock()))
        states = {player_id: await service.registry.get_state(player_id) for player_id in "ABDE"}
        return service, session, states

    service, session, states = asyncio.run(scenario())
    assert session is None
    assert states["D"] is PlayerState.IDLE
    assert all(states[player_id] is PlayerState.WAITING for player_id in "ABE")
    assert {entry.player_id for entry in service.pool.snapshot()} == {"A", "B", "C", "E"}
    assert len(service.ready_checks) == 0


def test_store_outage_aborts_tick_without_partial_state():
    async def scenario():
        clock = FakeClock()
        store = FlakyStore()
        service = build_service(group_size=4, clock=clock, store=store)
        await queue_scenario(service, clock)
        store.failing_prefix = "session:"
        with pytest.raises(StoreUnavailable):
            await service.tick()
        states = {player_id: await service.registry.get_state(player_id) for player_id in "ABCDE"}
        store.failing_prefix = None
        retried = await service.tick()
        return service, states, retried

    service, states, retried = asyncio.run(scenario())
    assert all(state is PlayerState.WAITING for state in states.values())
    assert len(retried) == 1
    assert set(retried[0].member_ids) == {"A", "B", "D", "E"}
    # Reinstated entries keep their attempt count.
    assert all(entry.attempts == 0 for entry in retried[0].group.members)


def test_background_loop_ticks_until_stopped():
    async def scenario():
        clock = FakeClock()
        service = build_service(group_size=4, clock=clock, tick_interval=0.01)
        await queue_scenario(service, clock)
        service.grouping.start()
        for _ in range(100):
            if len(service.ready_checks):
                break
            await asyncio.sleep(0.01)
        await service.grouping.stop()
        return service

    service = asyncio.run(scenario())
    assert not service.grouping.running
    assert service.grouping.ticks_completed >= 1
    assert len(service.ready_checks) == 1
