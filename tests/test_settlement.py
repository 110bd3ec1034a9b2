from __future__ import annotations

import asyncio
import random
from collections import Counter
from decimal import Decimal
from uuid import uuid4

import pytest

from packbattle.crud import ReadData, UpdateData
from packbattle.domain.errors import (
    BattleNotFoundError,
    BattleNotFullError,
    BattleNotWaitingError,
    EmptyCatalogError,
    NotAuthorizedError,
    ParticipantsNotReadyError,
    SettlementError,
)
from packbattle.models.dc_models import BattleMode, BattleStatus, UserRole
from packbattle.services import settlement
from tests.battle_helpers import (
    ScriptedRandom,
    coins_of,
    count_pulls,
    pull_owners,
    register,
    seed_battle,
    seed_box,
)

TWO_CARDS = [("Low", 50.0, "10"), ("High", 50.0, "20")]


async def _two_player_battle(database, **kwargs):
    alice = await register(database, "alice")
    bob = await register(database, "bob")
    box_id = await seed_box(database, TWO_CARDS)
    battle_id = await seed_battle(database, box_id, ["alice", "bob"], **kwargs)
    return alice, bob, battle_id


def test_highest_value_wins_every_card_and_the_prize(run_db):
    async def scenario(database):
        alice, bob, battle_id = await _two_player_battle(database, entry_fee=25)
        # alice rolls 75 of 100 (High), bob rolls 25 (Low)
        result = await settlement.start_battle(database, battle_id, "alice", rng=ScriptedRandom([0.75, 0.25]))

        assert result.status == BattleStatus.FINISHED
        assert result.winner_id == alice
        assert result.total_prize == 50
        assert result.finished_at is not None
        totals = {p.user.user_id: p.total_value for p in result.participants}
        assert totals == {alice: 20.0, bob: 10.0}
        assert [(p.item_name, p.coin_value) for p in result.pulls] == [("High", 20.0), ("Low", 10.0)]

        owners = await pull_owners(database, battle_id)
        assert len(owners) == 2
        assert set(owners.values()) == {alice}
        assert await coins_of(database, "alice") == Decimal("1050")
        assert await coins_of(database, "bob") == Decimal("1000")

    run_db(scenario)


def test_pull_values_add_up_to_participant_totals(run_db):
    async def scenario(database):
        for name in ("a", "b", "c"):
            await register(database, name)
        box_id = await seed_box(
            database, [("One", 60.0, "1"), ("Five", 30.0, "5"), ("Fifty", 10.0, "50")], cards_per_pack=3
        )
        battle_id = await seed_battle(database, box_id, ["a", "b", "c"], rounds=4)
        result = await settlement.start_battle(database, battle_id, "a", rng=random.Random(8))

        assert len(result.pulls) == 3 * 4 * 3
        for participant in result.participants:
            pulled = [p.coin_value for p in result.pulls if p.participant_id == participant.participant_id]
            assert len(pulled) == 12
            assert participant.rounds_pulled == 4
            assert participant.total_value == pytest.approx(sum(pulled))

        winner_total = next(p.total_value for p in result.participants if p.user.user_id == result.winner_id)
        assert winner_total == max(p.total_value for p in result.participants)
        assert set((await pull_owners(database, battle_id)).values()) == {result.winner_id}

    run_db(scenario)


def test_lowest_value_wins(run_db):
    async def scenario(database):
        alice, bob, battle_id = await _two_player_battle(database, mode=BattleMode.LOWEST_WINS)
        result = await settlement.start_battle(database, battle_id, "alice", rng=ScriptedRandom([0.75, 0.25]))

        assert result.winner_id == bob
        assert set((await pull_owners(database, battle_id)).values()) == {bob}

    run_db(scenario)


def test_jackpot_winner_collects_pooled_entry_fees(run_db):
    async def scenario(database):
        names = ("a", "b", "c", "d")
        for name in names:
            await register(database, name)
        box_id = await seed_box(database, TWO_CARDS)
        battle_id = await seed_battle(database, box_id, list(names), mode=BattleMode.JACKPOT, entry_fee=25)
        result = await settlement.start_battle(database, battle_id, "a", rng=random.Random(12))

        assert result.total_prize == 100
        assert result.winner is not None
        for name in names:
            expected = Decimal("1100") if name == result.winner.username else Decimal("1000")
            assert await coins_of(database, name) == expected
        assert set((await pull_owners(database, battle_id)).values()) == {result.winner_id}

    run_db(scenario)


def test_shared_mode_splits_cards_and_pays_no_prize(run_db):
    async def scenario(database):
        users = [await register(database, name) for name in ("a", "b", "c")]
        box_id = await seed_box(database, TWO_CARDS, cards_per_pack=2)
        battle_id = await seed_battle(
            database, box_id, ["a", "b", "c"], mode=BattleMode.SHARED, rounds=2, entry_fee=25
        )
        result = await settlement.start_battle(database, battle_id, "a", rng=random.Random(4))

        assert result.share_mode is True
        assert result.winner_id is None
        assert result.display_winner_id in users
        owners = await pull_owners(database, battle_id)
        assert len(owners) == 12
        assert Counter(owners.values()) == {user_id: 4 for user_id in users}
        for name in ("a", "b", "c"):
            assert await coins_of(database, name) == Decimal("1000")

    run_db(scenario)


def test_second_start_is_rejected(run_db):
    async def scenario(database):
        _, _, battle_id = await _two_player_battle(database)
        await settlement.start_battle(database, battle_id, "alice", rng=random.Random(1))

        with pytest.raises(BattleNotWaitingError):
            await settlement.start_battle(database, battle_id, "alice", rng=random.Random(2))
        assert await count_pulls(database) == 2

    run_db(scenario)


def test_settling_a_stale_snapshot_writes_nothing(run_db):
    async def scenario(database):
        _, _, battle_id = await _two_player_battle(database)
        async with database.session() as session:
            stale = await ReadData.read_battle(battle_id, session)

        await settlement.start_battle(database, battle_id, "alice", rng=random.Random(1))
        finished = await settlement.read_battle_schema(database, battle_id)

        # the snapshot still says WAITING; the status gate must refuse it
        with pytest.raises(BattleNotWaitingError):
            await settlement.settle_battle(database, stale, rng=random.Random(2))

        assert await count_pulls(database) == 2
        after = await settlement.read_battle_schema(database, battle_id)
        assert after.winner_id == finished.winner_id
        assert after.finished_at == finished.finished_at

    run_db(scenario)


def test_failed_transfer_rolls_back_everything(run_db, monkeypatch):
    async def boom(pull_ids, owner_id, session):
        raise RuntimeError("disk full")

    monkeypatch.setattr(UpdateData, "transfer_pulls", staticmethod(boom))

    async def scenario(database):
        _, _, battle_id = await _two_player_battle(database, entry_fee=25)

        with pytest.raises(SettlementError) as excinfo:
            await settlement.start_battle(database, battle_id, "alice", rng=random.Random(1))
        assert excinfo.value.phase == "transfer"

        battle = await settlement.read_battle_schema(database, battle_id)
        assert battle.status == BattleStatus.WAITING
        assert battle.started_at is None
        assert battle.pulls == []
        assert all(p.total_value == 0 for p in battle.participants)
        assert await count_pulls(database) == 0
        assert await coins_of(database, "alice") == Decimal("1000")

    run_db(scenario)


def test_failed_payout_keeps_settled_cards(run_db, monkeypatch):
    async def boom(user_id, amount, session):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(UpdateData, "credit_coins", staticmethod(boom))

    async def scenario(database):
        alice, _, battle_id = await _two_player_battle(database, entry_fee=25)

        with pytest.raises(SettlementError) as excinfo:
            await settlement.start_battle(database, battle_id, "alice", rng=ScriptedRandom([0.75, 0.25]))
        assert excinfo.value.phase == "payout"

        battle = await settlement.read_battle_schema(database, battle_id)
        assert battle.status == BattleStatus.FINISHED
        assert battle.winner_id == alice
        assert await coins_of(database, "alice") == Decimal("1000")

    run_db(scenario)


def test_only_creator_or_admin_can_start(run_db):
    async def scenario(database):
        _, _, battle_id = await _two_player_battle(database)
        await register(database, "carol")
        await register(database, "root", role=UserRole.ADMIN)

        with pytest.raises(NotAuthorizedError):
            await settlement.start_battle(database, battle_id, "bob")
        with pytest.raises(NotAuthorizedError):
            await settlement.start_battle(database, battle_id, "carol")
        assert await count_pulls(database) == 0

        result = await settlement.start_battle(database, battle_id, "root", rng=random.Random(3))
        assert result.status == BattleStatus.FINISHED

    run_db(scenario)


def test_start_requires_a_full_battle(run_db):
    async def scenario(database):
        _, _, battle_id = await _two_player_battle(database, max_participants=4)
        with pytest.raises(BattleNotFullError, match="needs 2 more"):
            await settlement.start_battle(database, battle_id, "alice")

    run_db(scenario)


def test_start_requires_ready_humans_but_not_bots(run_db):
    async def scenario(database):
        await register(database, "alice")
        await register(database, "bob")
        await register(database, "botty", is_bot=True)
        box_id = await seed_box(database, TWO_CARDS)
        with_human = await seed_battle(database, box_id, ["alice", "bob"], ready=False)
        with_bot = await seed_battle(database, box_id, ["alice", "botty"], ready=False)

        with pytest.raises(ParticipantsNotReadyError, match="Waiting for 2"):
            await settlement.start_battle(database, with_human, "alice")

        async with database.session() as session:
            battle = await ReadData.read_battle(with_bot, session)
            creator_seat = battle.participants[0].participant_id
        async with database.session() as session:
            async with session.begin():
                await UpdateData.mark_participants_ready([creator_seat], session)

        result = await settlement.start_battle(database, with_bot, "alice", rng=random.Random(5))
        assert result.status == BattleStatus.FINISHED
        assert all(p.is_ready for p in result.participants)

    run_db(scenario)


def test_unknown_battle_and_empty_box(run_db):
    async def scenario(database):
        await register(database, "alice")
        await register(database, "bob")
        with pytest.raises(BattleNotFoundError):
            await settlement.start_battle(database, uuid4(), "alice")

        empty_box = await seed_box(database, [])
        battle_id = await seed_battle(database, empty_box, ["alice", "bob"])
        with pytest.raises(EmptyCatalogError):
            await settlement.start_battle(database, battle_id, "alice")

        battle = await settlement.read_battle_schema(database, battle_id)
        assert battle.status == BattleStatus.WAITING

    run_db(scenario)


def test_auto_start_resolves_full_battles_only(run_db):
    async def scenario(database):
        for name in ("alice", "bob", "carol"):
            await register(database, name)
        box_id = await seed_box(database, TWO_CARDS)
        empty_box = await seed_box(database, [])
        full = await seed_battle(database, box_id, ["alice", "bob"], ready=False)
        broken = await seed_battle(database, empty_box, ["bob", "carol"], ready=False)
        waiting = await seed_battle(database, box_id, ["carol"], max_participants=2)

        results = await settlement.auto_start_battles(database, 0, rng=random.Random(6))

        by_battle = {r.battle_id: r for r in results}
        assert set(by_battle) == {full, broken}
        assert by_battle[full].status == "started"
        assert by_battle[broken].status == "error"
        assert "no cards" in by_battle[broken].error

        assert (await settlement.read_battle_schema(database, full)).status == BattleStatus.FINISHED
        assert (await settlement.read_battle_schema(database, broken)).status == BattleStatus.WAITING
        assert (await settlement.read_battle_schema(database, waiting)).status == BattleStatus.WAITING

    run_db(scenario)


def test_concurrent_starts_settle_exactly_once(run_db):
    async def scenario(database):
        await register(database, "alice")
        await register(database, "bob")
        box_id = await seed_box(database, TWO_CARDS, cards_per_pack=5)
        battle_id = await seed_battle(database, box_id, ["alice", "bob"], rounds=5, entry_fee=25)

        results = await asyncio.gather(
            *(
                settlement.start_battle(database, battle_id, "alice", rng=random.Random(seed))
                for seed in range(4)
            ),
            return_exceptions=True,
        )

        settled = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, BattleNotWaitingError)]
        assert len(settled) == 1
        assert len(rejected) == 3
        assert all(str(r) == "Battle has already started or finished" for r in rejected)
        assert await count_pulls(database) == 2 * 5 * 5
        assert await coins_of(database, "alice") + await coins_of(database, "bob") == Decimal("2050")

    run_db(scenario)
