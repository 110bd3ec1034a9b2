"""Battle start and settlement.

- Lookups before the point of no return are retried (``with_retry``).
- Settlement executes within one atomic unit of work: the WAITING gate,
  every draw, participant totals, ownership transfer and the FINISHED mark
  commit together or not at all. It is never retried.
- The prize payout runs in its own transaction right after settlement commits.
"""

import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from packbattle.converter import DataConverter
from packbattle.crud import CreateData, ReadData, UpdateData
from packbattle.db import Database, with_retry
from packbattle.domain.battle_rules import (
    DrawRecord,
    Outcome,
    distribute_shared,
    expand_rounds,
    resolve_outcome,
    total_prize,
    validate_start,
)
from packbattle.domain.errors import (
    BattleError,
    BattleNotFoundError,
    BattleNotWaitingError,
    EmptyCatalogError,
    SettlementError,
    UserNotFoundError,
)
from packbattle.models.schema_models import AutoStartResultSchema, BattleSchema
from packbattle.models.schemas import Battle
from packbattle.redis_notifier import BattleNotifier

data_converter = DataConverter()


async def _load_battle(database: Database, battle_id: UUID) -> Battle | None:
    async with database.session() as session:
        return await ReadData.read_battle(battle_id, session)


async def read_battle_schema(database: Database, battle_id: UUID) -> BattleSchema:
    battle = await with_retry(lambda: _load_battle(database, battle_id), "battle:read")
    if battle is None:
        raise BattleNotFoundError()
    return data_converter.convert_battle(battle)


async def commit_settlement(
    database: Database,
    battle: Battle,
    draws: List[DrawRecord],
    totals: Dict[UUID, Decimal],
    outcome: Outcome,
    rng: random.Random,
) -> Optional[UUID]:
    """Persist a resolved battle. Executes within one atomic unit of work.

    Args:
        battle (Battle): Snapshot read before settlement (participants and box loaded)
        draws (List[DrawRecord]): Every draw, in expansion order
        totals (Dict[UUID, Decimal]): participant_id -> total value
        outcome (Outcome): Resolved outcome, keyed by participant id

    Raises:
        BattleNotWaitingError: Another request already claimed the battle

    Returns:
        Optional[UUID]: Winner's user id, None in shared mode
    """
    participant_users = {p.participant_id: p.user_id for p in battle.participants}
    owner_ids = [p.user_id for p in battle.participants]
    bots_to_ready = [p.participant_id for p in battle.participants if p.user.is_bot and not p.is_ready]
    prize = total_prize(battle.entry_fee, len(battle.participants))

    winner_user_id = participant_users[outcome.winner_id] if outcome.winner_id is not None else None
    display_user_id = (
        participant_users[outcome.display_winner_id] if outcome.display_winner_id is not None else None
    )

    phase = "claim"
    async with database.session() as session:
        try:
            async with session.begin():
                if not await UpdateData.claim_waiting_battle(battle.battle_id, session):
                    raise BattleNotWaitingError()

                phase = "ready-bots"
                await UpdateData.mark_participants_ready(bots_to_ready, session)

                phase = "persist-draws"
                pull_ids = await CreateData.add_draws(
                    battle.battle_id, battle.box_id, draws, participant_users, session
                )
                await UpdateData.update_participant_totals(totals, battle.rounds, session)

                phase = "transfer"
                if outcome.shared:
                    for owner_id, owned in distribute_shared(pull_ids, owner_ids, rng).items():
                        await UpdateData.transfer_pulls(owned, owner_id, session)
                    logging.info(
                        f"Shared mode: {len(pull_ids)} cards distributed among {len(owner_ids)} participants "
                        f"(battle {battle.battle_id})"
                    )
                else:
                    await UpdateData.transfer_pulls(pull_ids, winner_user_id, session)
                    logging.info(
                        f"{battle.mode.value}: {len(pull_ids)} cards transferred to winner {winner_user_id} "
                        f"(battle {battle.battle_id})"
                    )

                phase = "finish"
                await UpdateData.finish_battle(
                    battle.battle_id, winner_user_id, display_user_id, prize, session
                )
        except BattleError:
            raise
        except Exception as e:
            logging.error(f"Settlement of battle {battle.battle_id} failed during {phase}: {e}")
            raise SettlementError(battle.battle_id, phase) from e

    if not outcome.shared and winner_user_id is not None and prize > 0:
        try:
            async with database.session() as session:
                async with session.begin():
                    await UpdateData.credit_coins(winner_user_id, prize, session)
        except Exception as e:
            # Cards are already settled at this point; the prize must be credited by hand.
            logging.error(
                f"Prize payout of {prize} to {winner_user_id} for battle {battle.battle_id} failed: {e}"
            )
            raise SettlementError(battle.battle_id, "payout") from e

    return winner_user_id


async def settle_battle(
    database: Database,
    battle: Battle,
    *,
    rng: random.Random,
    notifier: BattleNotifier | None = None,
) -> BattleSchema:
    """Draw, resolve and commit a battle whose preconditions were already checked."""
    catalog = data_converter.convert_cards_to_catalog(battle.box.cards)
    if not catalog:
        raise EmptyCatalogError()

    participant_ids = [p.participant_id for p in battle.participants]
    draws, totals = expand_rounds(participant_ids, catalog, battle.rounds, battle.box.cards_per_pack, rng)
    outcome = resolve_outcome(totals, battle.mode, participant_ids, rng)

    await commit_settlement(database, battle, draws, totals, outcome, rng)

    if notifier is not None:
        await notifier.publish(battle.battle_id, "finished")

    return await read_battle_schema(database, battle.battle_id)


async def start_battle(
    database: Database,
    battle_id: UUID,
    username: str,
    *,
    rng: random.Random | None = None,
    notifier: BattleNotifier | None = None,
) -> BattleSchema:
    """Start a battle on behalf of its creator or an admin and settle it

    Args:
        database (Database): Datastore client
        battle_id (UUID): To identify the battle
        username (str): Authenticated caller

    Raises:
        BattleError: A precondition failed; nothing was written
        SettlementError: Settlement failed and was rolled back (or payout failed)
    """
    rng = rng or random.Random()

    battle = await with_retry(lambda: _load_battle(database, battle_id), "start:read_battle")
    if battle is None:
        raise BattleNotFoundError()

    async def _read_user():
        async with database.session() as session:
            return await ReadData.read_user_by_username(username, session)

    user = await with_retry(_read_user, "start:read_user")
    if user is None:
        raise UserNotFoundError()

    validate_start(
        status=battle.status,
        participant_count=len(battle.participants),
        max_participants=battle.max_participants,
        not_ready_humans=sum(1 for p in battle.participants if not p.is_ready and not p.user.is_bot),
        is_creator=battle.creator_id == user.user_id,
        is_admin=user.is_admin,
    )

    logging.info(f"User {username} is starting battle {battle_id}")
    return await settle_battle(database, battle, rng=rng, notifier=notifier)


async def auto_start_battles(
    database: Database,
    after_minutes: int,
    *,
    rng: random.Random | None = None,
    notifier: BattleNotifier | None = None,
) -> List[AutoStartResultSchema]:
    """Start every battle that has been full and waiting for at least after_minutes.

    All participants, humans included, are marked ready. A failing battle is
    logged and reported without stopping the sweep.
    """
    rng = rng or random.Random()
    cutoff = datetime.now() - timedelta(minutes=after_minutes)

    async def _read_candidates():
        async with database.session() as session:
            return await ReadData.read_auto_start_candidates(cutoff, session)

    candidates = await with_retry(_read_candidates, "auto-start:find_battles")
    logging.info(f"[AUTO-START] Found {len(candidates)} battles to auto-start")

    results: List[AutoStartResultSchema] = []
    for candidate in candidates:
        try:
            async with database.session() as session:
                async with session.begin():
                    await UpdateData.mark_participants_ready(
                        [p.participant_id for p in candidate.participants], session
                    )
            battle = await with_retry(
                lambda: _load_battle(database, candidate.battle_id), "auto-start:read_battle"
            )
            validate_start(
                status=battle.status,
                participant_count=len(battle.participants),
                max_participants=battle.max_participants,
                not_ready_humans=0,
                is_creator=False,
                is_admin=False,
                system=True,
            )
            await settle_battle(database, battle, rng=rng, notifier=notifier)
            results.append(AutoStartResultSchema(battle_id=candidate.battle_id, status="started"))
            logging.info(f"[AUTO-START] Successfully started battle {candidate.battle_id}")
        except Exception as e:
            logging.error(f"[AUTO-START] Failed to start battle {candidate.battle_id}: {e}")
            results.append(
                AutoStartResultSchema(battle_id=candidate.battle_id, status="error", error=str(e))
            )
    return results
