from decimal import Decimal
from typing import List

from packbattle.domain.battle_rules import CatalogEntry
from packbattle.models.schemas import Battle, BattleParticipant, BattlePull, Box, Card
from packbattle.models.schema_models import (
    BattlePullSchema,
    BattleSchema,
    BoxSchema,
    ParticipantSchema,
    UserSummarySchema,
)


class DataConverter:
    """This class is used to convert data between different formats.

    Decimal columns are normalized to floats on the way out so clients receive
    plain numbers.
    """

    def convert_cards_to_catalog(self, cards: List[Card]) -> List[CatalogEntry]:
        """Convert the ORM cards of a box into an in-memory catalog

        Args:
            cards (List[Card]): Cards of the box, already in draw order
        Returns:
            List[CatalogEntry]: Catalog the drawer can use without touching the database
        """
        return [
            CatalogEntry(
                card_id=card.card_id,
                name=card.name,
                weight=float(card.pull_rate or 0.0),
                value=Decimal(card.coin_value or 0),
                image_url=card.image_url,
                rarity=card.rarity,
            )
            for card in cards
        ]

    def convert_box(self, box: Box) -> BoxSchema:
        return BoxSchema(
            box_id=box.box_id,
            name=box.name,
            price=float(box.price),
            cards_per_pack=box.cards_per_pack,
        )

    def convert_participant(self, participant: BattleParticipant) -> ParticipantSchema:
        return ParticipantSchema(
            participant_id=participant.participant_id,
            user=UserSummarySchema.model_validate(participant.user),
            seat=participant.seat,
            is_ready=participant.is_ready,
            total_value=float(participant.total_value),
            rounds_pulled=participant.rounds_pulled,
        )

    def convert_battle_pull(self, battle_pull: BattlePull) -> BattlePullSchema:
        return BattlePullSchema(
            battle_pull_id=battle_pull.battle_pull_id,
            participant_id=battle_pull.participant_id,
            pull_id=battle_pull.pull_id,
            card_id=battle_pull.pull.card_id,
            owner_id=battle_pull.pull.user_id,
            round_number=battle_pull.round_number,
            sequence=battle_pull.sequence,
            coin_value=float(battle_pull.coin_value),
            item_name=battle_pull.item_name,
            item_image=battle_pull.item_image,
            item_rarity=battle_pull.item_rarity,
        )

    def convert_battle(self, battle: Battle) -> BattleSchema:
        """Convert a fully loaded Battle into the response schema

        Args:
            battle (Battle): Battle with participants, box, winner and pulls loaded
        Returns:
            BattleSchema: The battle as sent to clients
        """
        return BattleSchema(
            battle_id=battle.battle_id,
            creator_id=battle.creator_id,
            status=battle.status,
            mode=battle.mode,
            share_mode=battle.share_mode,
            rounds=battle.rounds,
            max_participants=battle.max_participants,
            entry_fee=float(battle.entry_fee),
            total_prize=float(battle.total_prize),
            winner_id=battle.winner_id,
            display_winner_id=battle.display_winner_id,
            winner=UserSummarySchema.model_validate(battle.winner) if battle.winner else None,
            box=self.convert_box(battle.box),
            participants=[self.convert_participant(p) for p in battle.participants],
            pulls=[self.convert_battle_pull(bp) for bp in battle.pulls],
            created_at=battle.created_at,
            full_at=battle.full_at,
            started_at=battle.started_at,
            finished_at=battle.finished_at,
        )
