from sqlalchemy import Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.schema import Column
from sqlalchemy.types import Boolean, DateTime, Float, Integer, Numeric, String, Uuid
from uuid6 import uuid7
from datetime import datetime
from decimal import Decimal

from packbattle.models.dc_models import BattleMode, BattleStatus, UserRole

MONEY = Numeric(12, 2, asdecimal=True)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    user_id = Column(Uuid, primary_key=True, default=uuid7)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String)
    role = Column(Enum(UserRole, name="user_role"), default=UserRole.USER, nullable=False)
    is_bot = Column(Boolean, default=False, nullable=False)
    coins = Column(MONEY, default=Decimal("0"), nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Box(Base):
    __tablename__ = "boxes"
    box_id = Column(Uuid, primary_key=True, default=uuid7)
    name = Column(String, nullable=False)
    price = Column(MONEY, default=Decimal("0"), nullable=False)
    cards_per_pack = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    # Draw order is fixed by position; the drawer walks cards in this order.
    cards = relationship(
        "Card",
        back_populates="box",
        order_by=lambda: [Card.position, Card.card_id],
        cascade="all, delete",
    )


class Card(Base):
    __tablename__ = "cards"
    card_id = Column(Uuid, primary_key=True, default=uuid7)
    box_id = Column(Uuid, ForeignKey("boxes.box_id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    image_url = Column(String)
    rarity = Column(String)
    pull_rate = Column(Float, default=0.0, nullable=False)
    coin_value = Column(MONEY, default=Decimal("0"), nullable=False)
    position = Column(Integer, default=0, nullable=False)

    box = relationship("Box", back_populates="cards")


class Battle(Base):
    __tablename__ = "battles"
    battle_id = Column(Uuid, primary_key=True, default=uuid7)
    creator_id = Column(Uuid, ForeignKey("users.user_id"), nullable=False)
    box_id = Column(Uuid, ForeignKey("boxes.box_id"), nullable=False)
    status = Column(Enum(BattleStatus, name="battle_status"), default=BattleStatus.WAITING, nullable=False, index=True)
    mode = Column(Enum(BattleMode, name="battle_mode"), default=BattleMode.HIGHEST_WINS, nullable=False)
    rounds = Column(Integer, default=1, nullable=False)
    max_participants = Column(Integer, default=2, nullable=False)
    entry_fee = Column(Integer, default=0, nullable=False)
    total_prize = Column(MONEY, default=Decimal("0"), nullable=False)
    winner_id = Column(Uuid, ForeignKey("users.user_id"), nullable=True)
    display_winner_id = Column(Uuid, ForeignKey("users.user_id"), nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    full_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    creator = relationship("User", foreign_keys=[creator_id])
    winner = relationship("User", foreign_keys=[winner_id])
    box = relationship("Box")
    participants = relationship(
        "BattleParticipant",
        back_populates="battle",
        order_by="BattleParticipant.seat",
        cascade="all, delete",
    )
    pulls = relationship(
        "BattlePull",
        back_populates="battle",
        order_by=lambda: [BattlePull.round_number, BattlePull.sequence],
        cascade="all, delete",
    )

    @property
    def share_mode(self) -> bool:
        return self.mode == BattleMode.SHARED


class BattleParticipant(Base):
    __tablename__ = "battle_participants"
    __table_args__ = (
        UniqueConstraint("battle_id", "user_id", name="uq_participant_user"),
        UniqueConstraint("battle_id", "seat", name="uq_participant_seat"),
    )
    participant_id = Column(Uuid, primary_key=True, default=uuid7)
    battle_id = Column(Uuid, ForeignKey("battles.battle_id"), index=True, nullable=False)
    user_id = Column(Uuid, ForeignKey("users.user_id"), nullable=False)
    seat = Column(Integer, nullable=False)
    is_ready = Column(Boolean, default=False, nullable=False)
    total_value = Column(MONEY, default=Decimal("0"), nullable=False)
    rounds_pulled = Column(Integer, default=0, nullable=False)
    joined_at = Column(DateTime, default=datetime.now)

    battle = relationship("Battle", back_populates="participants")
    user = relationship("User")


class Pull(Base):
    """A card owned by a user. Battles reassign user_id on settlement."""

    __tablename__ = "pulls"
    pull_id = Column(Uuid, primary_key=True, default=uuid7)
    user_id = Column(Uuid, ForeignKey("users.user_id"), index=True, nullable=False)
    box_id = Column(Uuid, ForeignKey("boxes.box_id"), nullable=False)
    card_id = Column(Uuid, ForeignKey("cards.card_id"), nullable=False)
    card_value = Column(MONEY, nullable=False)
    pulled_at = Column(DateTime, default=datetime.now)

    card = relationship("Card")


class BattlePull(Base):
    __tablename__ = "battle_pulls"
    battle_pull_id = Column(Uuid, primary_key=True, default=uuid7)
    battle_id = Column(Uuid, ForeignKey("battles.battle_id"), index=True, nullable=False)
    participant_id = Column(Uuid, ForeignKey("battle_participants.participant_id"), nullable=False)
    pull_id = Column(Uuid, ForeignKey("pulls.pull_id"), nullable=False)
    round_number = Column(Integer, nullable=False)
    sequence = Column(Integer, nullable=False)
    coin_value = Column(MONEY, nullable=False)
    item_name = Column(String)
    item_image = Column(String)
    item_rarity = Column(String)

    battle = relationship("Battle", back_populates="pulls")
    participant = relationship("BattleParticipant")
    pull = relationship("Pull")
