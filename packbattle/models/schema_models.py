from pydantic import BaseModel
from typing import List, Optional
from uuid import UUID
from datetime import datetime

from packbattle.models.dc_models import BattleMode, BattleStatus


class UserSummarySchema(BaseModel):
    user_id: UUID
    username: str
    is_bot: bool

    class Config:
        from_attributes = True


class BoxSchema(BaseModel):
    box_id: UUID
    name: str
    price: float
    cards_per_pack: int


class ParticipantSchema(BaseModel):
    participant_id: UUID
    user: UserSummarySchema
    seat: int
    is_ready: bool
    total_value: float
    rounds_pulled: int


class BattlePullSchema(BaseModel):
    battle_pull_id: UUID
    participant_id: UUID
    pull_id: UUID
    card_id: UUID
    owner_id: UUID
    round_number: int
    sequence: int
    coin_value: float
    item_name: Optional[str]
    item_image: Optional[str]
    item_rarity: Optional[str]


class BattleSchema(BaseModel):
    battle_id: UUID
    creator_id: UUID
    status: BattleStatus
    mode: BattleMode
    share_mode: bool
    rounds: int
    max_participants: int
    entry_fee: float
    total_prize: float
    winner_id: Optional[UUID]
    display_winner_id: Optional[UUID]
    winner: Optional[UserSummarySchema]
    box: BoxSchema
    participants: List[ParticipantSchema]
    pulls: List[BattlePullSchema]
    created_at: datetime
    full_at: Optional[datetime]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]


class ReadyStateSchema(BaseModel):
    battle_id: UUID
    all_ready: bool
    participants: List[ParticipantSchema]


class AutoStartResultSchema(BaseModel):
    battle_id: UUID
    status: str
    error: Optional[str] = None


class PullRateSchema(BaseModel):
    card_id: UUID
    name: str
    expected_rate: float
    observed_rate: float
    deviation: float


class PullRateReportSchema(BaseModel):
    box_id: UUID
    iterations: int
    total_pull_rate: float
    cards: List[PullRateSchema]
