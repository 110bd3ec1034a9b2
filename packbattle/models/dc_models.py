from pydantic import BaseModel, Field
from enum import Enum
from uuid import UUID


class BattleStatus(str, Enum):
    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    FINISHED = "FINISHED"


class BattleMode(str, Enum):
    HIGHEST_WINS = "HIGHEST_WINS"  # highest total value takes every card
    LOWEST_WINS = "LOWEST_WINS"  # lowest total value takes every card
    JACKPOT = "JACKPOT"  # uniformly random participant takes every card
    SHARED = "SHARED"  # cards are shuffled and dealt to everyone


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class CreateBattleModel(BaseModel):
    box_id: UUID
    entry_fee: int = Field(ge=0)
    rounds: int = Field(ge=1)
    mode: BattleMode = BattleMode.HIGHEST_WINS
    max_participants: int = Field(ge=2, le=8)


class AddBotsModel(BaseModel):
    count: int = Field(default=1, ge=1, le=8)
