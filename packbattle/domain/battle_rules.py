"""Battle rules that are independent from HTTP and DB.

Rule of thumb:
- OK: weighted draws, totals, winner selection, shuffles, validation.
- Not OK: touching DB sessions, Redis, FastAPI, datetime.now(), etc.

Every function that needs randomness takes a ``random.Random`` so a battle can
be replayed from a seed.
"""

import random
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Hashable, List, Optional, Sequence, Tuple, TypeVar

from packbattle.domain.errors import (
    BattleNotFullError,
    BattleNotWaitingError,
    EmptyCatalogError,
    NotAuthorizedError,
    ParticipantsNotReadyError,
)
from packbattle.models.dc_models import BattleMode, BattleStatus

T = TypeVar("T")
P = TypeVar("P", bound=Hashable)


@dataclass(frozen=True)
class CatalogEntry:
    card_id: Hashable
    name: str
    weight: float
    value: Decimal
    image_url: Optional[str] = None
    rarity: Optional[str] = None


@dataclass(frozen=True)
class DrawRecord:
    participant_id: Hashable
    entry: CatalogEntry
    round_number: int
    slot_number: int
    value: Decimal  # copied from the entry at draw time

    @property
    def card_id(self) -> Hashable:
        return self.entry.card_id


@dataclass(frozen=True)
class Outcome:
    winner_id: Optional[Hashable]
    shared: bool
    display_winner_id: Optional[Hashable] = None


# ==============================================================================
# ==== Drawer ==================================================================
# ==============================================================================


def draw_card(catalog: Sequence[CatalogEntry], rng: random.Random) -> CatalogEntry:
    """Draw one entry with probability proportional to its weight.

    Entries are walked in the given order. If rounding leaves no entry whose
    cumulative weight reaches the roll, the last entry is returned.
    """
    if not catalog:
        raise EmptyCatalogError()

    total = sum(entry.weight for entry in catalog)
    if total <= 0:
        return catalog[-1]

    roll = rng.random() * total
    cumulative = 0.0
    for entry in catalog:
        cumulative += entry.weight
        if cumulative >= roll:
            return entry
    return catalog[-1]


# ==============================================================================
# ==== Round expansion =========================================================
# ==============================================================================


def expand_rounds(
    participant_ids: Sequence[P],
    catalog: Sequence[CatalogEntry],
    rounds: int,
    slots_per_round: int,
    rng: random.Random,
) -> Tuple[List[DrawRecord], Dict[P, Decimal]]:
    """Draw every card of a battle in memory.

    Iteration is participant-major, then round, then slot, so draws of the same
    round stay groupable afterwards.

    Returns:
        The flat list of draws and each participant's total value.
    """
    if not catalog:
        raise EmptyCatalogError()

    draws: List[DrawRecord] = []
    totals: Dict[P, Decimal] = {}
    for participant_id in participant_ids:
        total = Decimal("0")
        for round_number in range(1, rounds + 1):
            for slot_number in range(1, slots_per_round + 1):
                entry = draw_card(catalog, rng)
                draws.append(
                    DrawRecord(
                        participant_id=participant_id,
                        entry=entry,
                        round_number=round_number,
                        slot_number=slot_number,
                        value=entry.value,
                    )
                )
                total += entry.value
        totals[participant_id] = total
    return draws, totals


# ==============================================================================
# ==== Outcome =================================================================
# ==============================================================================


def _highest(totals: Dict[P, Decimal], participant_ids: Sequence[P]) -> P:
    winner = None
    best = float("-inf")
    for participant_id in participant_ids:
        value = totals.get(participant_id, Decimal("0"))
        # strict comparison: ties keep the earlier participant
        if value > best:
            best = value
            winner = participant_id
    return winner


def _lowest(totals: Dict[P, Decimal], participant_ids: Sequence[P]) -> P:
    winner = None
    best = float("inf")
    for participant_id in participant_ids:
        value = totals.get(participant_id, Decimal("0"))
        if value < best:
            best = value
            winner = participant_id
    return winner


def resolve_outcome(
    totals: Dict[P, Decimal],
    mode: BattleMode,
    participant_ids: Sequence[P],
    rng: random.Random,
) -> Outcome:
    """Pick the winner for the given mode.

    Jackpot ignores totals entirely. Shared mode has no winner for settlement,
    only a random participant for display.
    """
    if not participant_ids:
        raise ValueError("A battle needs at least one participant")

    if mode == BattleMode.HIGHEST_WINS:
        return Outcome(winner_id=_highest(totals, participant_ids), shared=False)
    elif mode == BattleMode.LOWEST_WINS:
        return Outcome(winner_id=_lowest(totals, participant_ids), shared=False)
    elif mode == BattleMode.JACKPOT:
        index = rng.randrange(len(participant_ids))
        return Outcome(winner_id=participant_ids[index], shared=False)
    elif mode == BattleMode.SHARED:
        index = rng.randrange(len(participant_ids))
        return Outcome(winner_id=None, shared=True, display_winner_id=participant_ids[index])
    raise ValueError(f"Unsupported battle mode: {mode!r}")


# ==============================================================================
# ==== Distribution ============================================================
# ==============================================================================


def shuffle_items(items: Sequence[T], rng: random.Random) -> List[T]:
    """Fisher-Yates shuffle into a new list."""
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randrange(i + 1)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def distribute_shared(
    item_ids: Sequence[T],
    owner_ids: Sequence[P],
    rng: random.Random,
) -> Dict[P, List[T]]:
    """Shuffle the items and deal them round-robin, grouped by new owner."""
    if not owner_ids:
        raise ValueError("Cannot distribute items without owners")

    grouped: Dict[P, List[T]] = defaultdict(list)
    for position, item_id in enumerate(shuffle_items(item_ids, rng)):
        grouped[owner_ids[position % len(owner_ids)]].append(item_id)
    return dict(grouped)


def total_prize(entry_fee: int, participant_count: int) -> Decimal:
    return Decimal(entry_fee) * participant_count


# ==============================================================================
# ==== Preconditions ===========================================================
# ==============================================================================


def start_cost(entry_fee: int, box_price: Decimal, rounds: int) -> Decimal:
    """Coins a human participant pays to take a seat."""
    return Decimal(entry_fee) + Decimal(box_price) * rounds


def validate_start(
    *,
    status: BattleStatus,
    participant_count: int,
    max_participants: int,
    not_ready_humans: int,
    is_creator: bool,
    is_admin: bool,
    system: bool = False,
) -> None:
    """Raise the first violated start precondition.

    ``system`` skips the creator/admin check for scheduler-driven starts.
    """
    if not system and not (is_creator or is_admin):
        raise NotAuthorizedError()
    if status != BattleStatus.WAITING:
        raise BattleNotWaitingError()
    if participant_count < max_participants:
        missing = max_participants - participant_count
        raise BattleNotFullError(f"Battle needs {missing} more participant(s)")
    if not_ready_humans > 0:
        raise ParticipantsNotReadyError(f"Waiting for {not_ready_humans} participant(s) to be ready")
