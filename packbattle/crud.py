"""CRUD helpers for battle tables.

None of the helpers here commit. The service layer owns the session and opens
the transaction (``async with session.begin()``) around them.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Sequence
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from uuid6 import uuid7

from packbattle.domain.battle_rules import DrawRecord
from packbattle.models.dc_models import BattleMode, BattleStatus, UserRole
from packbattle.models.schemas import (
    Battle,
    BattleParticipant,
    BattlePull,
    Box,
    Card,
    Pull,
    User,
)


def _battle_load_options():
    return (
        selectinload(Battle.participants).selectinload(BattleParticipant.user),
        selectinload(Battle.box).selectinload(Box.cards),
        selectinload(Battle.winner),
        selectinload(Battle.pulls).selectinload(BattlePull.pull),
    )


class ReadData:
    @staticmethod
    async def read_battle(battle_id: UUID, session: AsyncSession) -> Battle | None:
        """Read a battle with participants, box cards, winner and pulls loaded

        Args:
            battle_id (UUID): To identify the battle
            session (AsyncSession): AsyncSession object to interact with database
        """
        stmt = (
            select(Battle)
            .where(Battle.battle_id == battle_id)
            .options(*_battle_load_options())
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def read_battles(limit: int, session: AsyncSession) -> List[Battle]:
        stmt = (
            select(Battle)
            .options(*_battle_load_options())
            .order_by(Battle.created_at.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def read_auto_start_candidates(cutoff: datetime, session: AsyncSession) -> List[Battle]:
        """Read WAITING battles that have been full (or, lacking full_at, created) before cutoff"""
        stmt = (
            select(Battle)
            .where(
                Battle.status == BattleStatus.WAITING,
                or_(
                    Battle.full_at <= cutoff,
                    and_(Battle.full_at.is_(None), Battle.created_at <= cutoff),
                ),
            )
            .options(selectinload(Battle.participants))
            .order_by(Battle.created_at)
        )
        result = await session.execute(stmt)
        return [battle for battle in result.scalars().all() if len(battle.participants) >= battle.max_participants]

    @staticmethod
    async def read_user_by_username(username: str, session: AsyncSession) -> User | None:
        stmt = select(User).where(User.username == username)
        result = await session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def read_box(box_id: UUID, session: AsyncSession) -> Box | None:
        stmt = select(Box).where(Box.box_id == box_id).options(selectinload(Box.cards))
        result = await session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def read_available_bots(exclude_user_ids: Iterable[UUID], count: int, session: AsyncSession) -> List[User]:
        stmt = (
            select(User)
            .where(User.is_bot.is_(True), User.user_id.not_in(list(exclude_user_ids)))
            .order_by(User.created_at, User.user_id)
            .limit(count)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())


class CreateData:
    @staticmethod
    async def add_user(
        username: str,
        session: AsyncSession,
        *,
        email: str | None = None,
        role: UserRole = UserRole.USER,
        is_bot: bool = False,
        coins: Decimal = Decimal("0"),
    ) -> User:
        user = User(
            user_id=uuid7(),
            username=username,
            email=email,
            role=role,
            is_bot=is_bot,
            coins=coins,
            created_at=datetime.now(),
        )
        session.add(user)
        await session.flush()
        return user

    @staticmethod
    async def add_box(name: str, price: Decimal, cards_per_pack: int, session: AsyncSession) -> Box:
        box = Box(box_id=uuid7(), name=name, price=price, cards_per_pack=cards_per_pack)
        session.add(box)
        await session.flush()
        return box

    @staticmethod
    async def add_card(
        box_id: UUID,
        name: str,
        pull_rate: float,
        coin_value: Decimal,
        position: int,
        session: AsyncSession,
        *,
        image_url: str | None = None,
        rarity: str | None = None,
    ) -> Card:
        card = Card(
            card_id=uuid7(),
            box_id=box_id,
            name=name,
            pull_rate=pull_rate,
            coin_value=coin_value,
            position=position,
            image_url=image_url,
            rarity=rarity,
        )
        session.add(card)
        await session.flush()
        return card

    @staticmethod
    async def add_battle(
        creator_id: UUID,
        box_id: UUID,
        mode: BattleMode,
        rounds: int,
        max_participants: int,
        entry_fee: int,
        session: AsyncSession,
    ) -> Battle:
        battle = Battle(
            battle_id=uuid7(),
            creator_id=creator_id,
            box_id=box_id,
            status=BattleStatus.WAITING,
            mode=mode,
            rounds=rounds,
            max_participants=max_participants,
            entry_fee=entry_fee,
            total_prize=Decimal("0"),
            created_at=datetime.now(),
        )
        session.add(battle)
        await session.flush()
        return battle

    @staticmethod
    async def add_participant(
        battle_id: UUID, user_id: UUID, seat: int, session: AsyncSession, is_ready: bool = False
    ) -> BattleParticipant:
        participant = BattleParticipant(
            participant_id=uuid7(),
            battle_id=battle_id,
            user_id=user_id,
            seat=seat,
            is_ready=is_ready,
            total_value=Decimal("0"),
            rounds_pulled=0,
            joined_at=datetime.now(),
        )
        session.add(participant)
        await session.flush()
        return participant

    @staticmethod
    async def add_draws(
        battle_id: UUID,
        box_id: UUID,
        draws: Sequence[DrawRecord],
        participant_users: Dict[UUID, UUID],
        session: AsyncSession,
    ) -> List[UUID]:
        """Persist every draw as an owned pull plus its battle-scoped record

        Args:
            battle_id (UUID): Battle the draws belong to
            box_id (UUID): Box the cards were drawn from
            draws (Sequence[DrawRecord]): Draws in expansion order
            participant_users (Dict[UUID, UUID]): participant_id -> user_id, the initial owner

        Returns:
            List[UUID]: Pull ids in the same order as draws
        """
        pulled_at = datetime.now()
        pull_ids: List[UUID] = []
        rows = []
        for sequence, draw in enumerate(draws):
            pull = Pull(
                pull_id=uuid7(),
                user_id=participant_users[draw.participant_id],
                box_id=box_id,
                card_id=draw.card_id,
                card_value=draw.value,
                pulled_at=pulled_at,
            )
            rows.append(pull)
            rows.append(
                BattlePull(
                    battle_pull_id=uuid7(),
                    battle_id=battle_id,
                    participant_id=draw.participant_id,
                    pull_id=pull.pull_id,
                    round_number=draw.round_number,
                    sequence=sequence,
                    coin_value=draw.value,
                    item_name=draw.entry.name,
                    item_image=draw.entry.image_url,
                    item_rarity=draw.entry.rarity,
                )
            )
            pull_ids.append(pull.pull_id)
        session.add_all(rows)
        await session.flush()
        return pull_ids


class UpdateData:
    @staticmethod
    async def claim_waiting_battle(battle_id: UUID, session: AsyncSession) -> bool:
        """Move a WAITING battle to IN_PROGRESS.

        The status condition is part of the UPDATE, so of two concurrent
        claims only one matches a row.

        Returns:
            bool: True if this session claimed the battle
        """
        stmt = (
            update(Battle)
            .where(Battle.battle_id == battle_id, Battle.status == BattleStatus.WAITING)
            .values(status=BattleStatus.IN_PROGRESS, started_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    async def mark_participants_ready(participant_ids: Sequence[UUID], session: AsyncSession) -> None:
        if not participant_ids:
            return
        stmt = (
            update(BattleParticipant)
            .where(BattleParticipant.participant_id.in_(list(participant_ids)))
            .values(is_ready=True)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    @staticmethod
    async def unmark_participant_ready(participant_id: UUID, session: AsyncSession) -> None:
        stmt = (
            update(BattleParticipant)
            .where(BattleParticipant.participant_id == participant_id)
            .values(is_ready=False)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    @staticmethod
    async def update_participant_totals(
        totals: Dict[UUID, Decimal], rounds_pulled: int, session: AsyncSession
    ) -> None:
        for participant_id, total in totals.items():
            stmt = (
                update(BattleParticipant)
                .where(BattleParticipant.participant_id == participant_id)
                .values(total_value=total, rounds_pulled=rounds_pulled)
                .execution_options(synchronize_session=False)
            )
            await session.execute(stmt)

    @staticmethod
    async def transfer_pulls(pull_ids: Sequence[UUID], owner_id: UUID, session: AsyncSession) -> None:
        """Reassign a batch of pulls to one owner in a single statement"""
        if not pull_ids:
            return
        stmt = (
            update(Pull)
            .where(Pull.pull_id.in_(list(pull_ids)))
            .values(user_id=owner_id)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    @staticmethod
    async def finish_battle(
        battle_id: UUID,
        winner_id: UUID | None,
        display_winner_id: UUID | None,
        prize: Decimal,
        session: AsyncSession,
    ) -> None:
        stmt = (
            update(Battle)
            .where(Battle.battle_id == battle_id, Battle.status == BattleStatus.IN_PROGRESS)
            .values(
                status=BattleStatus.FINISHED,
                winner_id=winner_id,
                display_winner_id=display_winner_id,
                total_prize=prize,
                finished_at=datetime.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise RuntimeError(f"Battle {battle_id} was not IN_PROGRESS when finishing")

    @staticmethod
    async def set_full_at(battle_id: UUID, session: AsyncSession) -> None:
        stmt = (
            update(Battle)
            .where(Battle.battle_id == battle_id)
            .values(full_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    @staticmethod
    async def credit_coins(user_id: UUID, amount: Decimal, session: AsyncSession) -> None:
        stmt = (
            update(User)
            .where(User.user_id == user_id)
            .values(coins=User.coins + amount)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    @staticmethod
    async def debit_coins(user_id: UUID, amount: Decimal, session: AsyncSession) -> bool:
        """Deduct coins only if the balance covers them

        Returns:
            bool: False if the balance was too low and nothing changed
        """
        stmt = (
            update(User)
            .where(User.user_id == user_id, User.coins >= amount)
            .values(coins=User.coins - amount)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1


class DeleteData:
    @staticmethod
    async def delete_battle(battle: Battle, session: AsyncSession) -> None:
        """Delete a battle with its participants and battle pulls.

        The owned pulls stay with their current owners.

        Args:
            battle (Battle): Battle loaded in this session with participants and pulls
            session (AsyncSession): AsyncSession object to interact with database
        """
        await session.delete(battle)
        await session.flush()
