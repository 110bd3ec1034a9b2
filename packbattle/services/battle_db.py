"""DB service layer for the battle lobby.

- Routers should not touch DB sessions directly; they call this module.
- This layer owns session/transaction boundaries.
- Lookups are retried; writes run once inside ``session.begin()``.
"""

import logging
import random
from typing import List
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from packbattle.converter import DataConverter
from packbattle.crud import CreateData, DeleteData, ReadData, UpdateData
from packbattle.db import Database, with_retry
from packbattle.domain.battle_rules import start_cost
from packbattle.domain.errors import (
    AlreadyJoinedError,
    BattleFullError,
    BattleNotFinishedError,
    BattleNotFoundError,
    BattleNotFullError,
    BattleNotWaitingError,
    BoxNotFoundError,
    EmptyCatalogError,
    InsufficientCoinsError,
    NotAuthorizedError,
    NotEnoughBotsError,
    NotParticipantError,
    UserNotFoundError,
)
from packbattle.models.dc_models import BattleStatus, CreateBattleModel
from packbattle.models.schema_models import BattleSchema, PullRateReportSchema, ReadyStateSchema
from packbattle.models.schemas import Battle, Box, User
from packbattle.redis_notifier import BattleNotifier
from packbattle.services.settlement import read_battle_schema
from packbattle.services.simulation import simulate_pull_rates

data_converter = DataConverter()


async def _read_user(database: Database, username: str) -> User:
    async def _read():
        async with database.session() as session:
            return await ReadData.read_user_by_username(username, session)

    user = await with_retry(_read, "lobby:read_user")
    if user is None:
        raise UserNotFoundError()
    return user


async def _read_battle(database: Database, battle_id: UUID) -> Battle:
    async def _read():
        async with database.session() as session:
            return await ReadData.read_battle(battle_id, session)

    battle = await with_retry(_read, "lobby:read_battle")
    if battle is None:
        raise BattleNotFoundError()
    return battle


async def _read_box(database: Database, box_id: UUID) -> Box:
    async def _read():
        async with database.session() as session:
            return await ReadData.read_box(box_id, session)

    box = await with_retry(_read, "lobby:read_box")
    if box is None:
        raise BoxNotFoundError()
    return box


async def read_battle(database: Database, battle_id: UUID) -> BattleSchema:
    return await read_battle_schema(database, battle_id)


async def list_battles(database: Database, limit: int = 50) -> List[BattleSchema]:
    async def _read():
        async with database.session() as session:
            return await ReadData.read_battles(limit, session)

    battles = await with_retry(_read, "lobby:list_battles")
    return [data_converter.convert_battle(battle) for battle in battles]


async def create_battle(
    database: Database,
    username: str,
    request: CreateBattleModel,
) -> BattleSchema:
    """Create a battle and seat its creator, who pays like every other player

    Args:
        username (str): Authenticated creator
        request (CreateBattleModel): Box, mode, rounds, seats and entry fee
    """
    user = await _read_user(database, username)
    box = await _read_box(database, request.box_id)
    if not box.cards:
        raise EmptyCatalogError()

    cost = start_cost(request.entry_fee, box.price, request.rounds)
    async with database.session() as session:
        async with session.begin():
            if not await UpdateData.debit_coins(user.user_id, cost, session):
                raise InsufficientCoinsError(f"Not enough coins. You need {cost:.2f} coins")
            battle = await CreateData.add_battle(
                user.user_id,
                box.box_id,
                request.mode,
                request.rounds,
                request.max_participants,
                request.entry_fee,
                session,
            )
            await CreateData.add_participant(battle.battle_id, user.user_id, 0, session)
            battle_id = battle.battle_id

    logging.info(f"User {username} created battle {battle_id} ({request.mode.value}, {request.rounds} rounds)")
    return await read_battle_schema(database, battle_id)


async def join_battle(
    database: Database,
    battle_id: UUID,
    username: str,
    notifier: BattleNotifier | None = None,
) -> BattleSchema:
    """Take the next free seat, paying the entry fee and every round's pack

    Raises:
        BattleNotWaitingError, BattleFullError, AlreadyJoinedError, InsufficientCoinsError
    """
    user = await _read_user(database, username)
    battle = await _read_battle(database, battle_id)

    if battle.status != BattleStatus.WAITING:
        raise BattleNotWaitingError("This battle is no longer accepting participants")
    if len(battle.participants) >= battle.max_participants:
        raise BattleFullError()
    if any(p.user_id == user.user_id for p in battle.participants):
        raise AlreadyJoinedError()

    seat = len(battle.participants)
    cost = start_cost(battle.entry_fee, battle.box.price, battle.rounds)
    try:
        async with database.session() as session:
            async with session.begin():
                if not await UpdateData.debit_coins(user.user_id, cost, session):
                    raise InsufficientCoinsError(f"Not enough coins. You need {cost:.2f} coins")
                await CreateData.add_participant(battle_id, user.user_id, seat, session)
                if seat + 1 == battle.max_participants:
                    await UpdateData.set_full_at(battle_id, session)
    except IntegrityError as e:
        # the seat or the user is already taken by a concurrent join
        logging.warning(f"Join of battle {battle_id} by {username} lost a race: {e}")
        raise BattleFullError("This battle changed while joining, please retry") from e

    logging.info(f"User {username} joined battle {battle_id} at seat {seat}")
    if notifier is not None:
        await notifier.publish(battle_id, "joined")
    return await read_battle_schema(database, battle_id)


async def add_bots(
    database: Database,
    battle_id: UUID,
    username: str,
    count: int,
    notifier: BattleNotifier | None = None,
) -> BattleSchema:
    """Fill seats with bot users (admin only). Bots do not pay."""
    user = await _read_user(database, username)
    if not user.is_admin:
        raise NotAuthorizedError("Only admins can add bots")

    battle = await _read_battle(database, battle_id)
    if battle.status != BattleStatus.WAITING:
        raise BattleNotWaitingError("Bots can only join waiting battles")

    spots_left = battle.max_participants - len(battle.participants)
    if spots_left <= 0:
        raise BattleFullError("Battle is already full")
    if count > spots_left:
        raise BattleFullError(f"Only {spots_left} bot slot(s) available")

    async def _read_bots():
        async with database.session() as session:
            return await ReadData.read_available_bots(
                [p.user_id for p in battle.participants], count, session
            )

    bots = await with_retry(_read_bots, "lobby:read_bots")
    if len(bots) < count:
        raise NotEnoughBotsError(f"Only {len(bots)} bot(s) available")

    seat = len(battle.participants)
    try:
        async with database.session() as session:
            async with session.begin():
                for offset, bot in enumerate(bots):
                    await CreateData.add_participant(battle_id, bot.user_id, seat + offset, session)
                if seat + len(bots) == battle.max_participants:
                    await UpdateData.set_full_at(battle_id, session)
    except IntegrityError as e:
        logging.warning(f"Adding bots to battle {battle_id} lost a race: {e}")
        raise BattleFullError("This battle changed while adding bots, please retry") from e

    logging.info(f"Added {len(bots)} bot(s) to battle {battle_id}")
    if notifier is not None:
        await notifier.publish(battle_id, "bots")
    return await read_battle_schema(database, battle_id)


async def mark_ready(
    database: Database,
    battle_id: UUID,
    username: str,
    notifier: BattleNotifier | None = None,
) -> ReadyStateSchema:
    user = await _read_user(database, username)
    battle = await _read_battle(database, battle_id)

    if battle.status != BattleStatus.WAITING:
        raise BattleNotWaitingError("Battle is not in waiting state")
    if len(battle.participants) < battle.max_participants:
        raise BattleNotFullError()

    participant = next((p for p in battle.participants if p.user_id == user.user_id), None)
    if participant is None:
        raise NotParticipantError()

    async with database.session() as session:
        async with session.begin():
            await UpdateData.mark_participants_ready([participant.participant_id], session)

    if notifier is not None:
        await notifier.publish(battle_id, "ready")

    updated = await read_battle_schema(database, battle_id)
    return ReadyStateSchema(
        battle_id=battle_id,
        all_ready=all(p.is_ready for p in updated.participants),
        participants=updated.participants,
    )


async def unmark_ready(
    database: Database,
    battle_id: UUID,
    username: str,
    notifier: BattleNotifier | None = None,
) -> ReadyStateSchema:
    """Clear the caller's ready flag while the battle is still waiting"""
    user = await _read_user(database, username)
    battle = await _read_battle(database, battle_id)

    if battle.status != BattleStatus.WAITING:
        raise BattleNotWaitingError("Battle is not in waiting state")

    participant = next((p for p in battle.participants if p.user_id == user.user_id), None)
    if participant is None:
        raise NotParticipantError()

    async with database.session() as session:
        async with session.begin():
            await UpdateData.unmark_participant_ready(participant.participant_id, session)

    if notifier is not None:
        await notifier.publish(battle_id, "unready")

    updated = await read_battle_schema(database, battle_id)
    return ReadyStateSchema(
        battle_id=battle_id,
        all_ready=all(p.is_ready for p in updated.participants),
        participants=updated.participants,
    )


async def delete_battle(database: Database, battle_id: UUID, username: str) -> None:
    """Delete a finished battle with its participants and battle pulls (admin only).

    Cards pulled in the battle stay with their owners.

    Raises:
        NotAuthorizedError, BattleNotFoundError, BattleNotFinishedError
    """
    user = await _read_user(database, username)
    if not user.is_admin:
        raise NotAuthorizedError("Admin access required")

    async with database.session() as session:
        async with session.begin():
            battle = await ReadData.read_battle(battle_id, session)
            if battle is None:
                raise BattleNotFoundError()
            if battle.status != BattleStatus.FINISHED:
                raise BattleNotFinishedError()
            await DeleteData.delete_battle(battle, session)

    logging.info(f"Admin {username} deleted battle {battle_id}")

async def simulate_box(
    database: Database,
    box_id: UUID,
    iterations: int,
    rng: random.Random | None = None,
) -> PullRateReportSchema:
    box = await _read_box(database, box_id)
    catalog = data_converter.convert_cards_to_catalog(box.cards)
    return simulate_pull_rates(box.box_id, catalog, iterations, rng or random.Random())
