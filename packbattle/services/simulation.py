import random
from typing import Sequence
from uuid import UUID

import numpy as np

from packbattle.domain.battle_rules import CatalogEntry, draw_card
from packbattle.domain.errors import EmptyCatalogError
from packbattle.models.schema_models import PullRateReportSchema, PullRateSchema


def simulate_pull_rates(
    box_id: UUID,
    catalog: Sequence[CatalogEntry],
    iterations: int,
    rng: random.Random,
) -> PullRateReportSchema:
    """Open a box many times with the production drawer and compare observed
    pull rates to the configured ones.

    Args:
        box_id (UUID): Box the catalog belongs to
        catalog (Sequence[CatalogEntry]): Cards in draw order
        iterations (int): Number of draws
        rng (random.Random): Random source, seed it for a reproducible report

    Returns:
        PullRateReportSchema: Expected and observed rate per card
    """
    if not catalog:
        raise EmptyCatalogError()

    index_of = {entry.card_id: i for i, entry in enumerate(catalog)}
    drawn = np.fromiter(
        (index_of[draw_card(catalog, rng).card_id] for _ in range(iterations)),
        dtype=np.int64,
        count=iterations,
    )
    counts = np.bincount(drawn, minlength=len(catalog))

    weights = np.array([entry.weight for entry in catalog], dtype=np.float64)
    total = weights.sum()
    if total > 0:
        expected = weights / total
    else:
        # every draw lands on the last card
        expected = np.zeros(len(catalog))
        expected[-1] = 1.0
    observed = counts / iterations if iterations else np.zeros(len(catalog))

    return PullRateReportSchema(
        box_id=box_id,
        iterations=iterations,
        total_pull_rate=float(total),
        cards=[
            PullRateSchema(
                card_id=entry.card_id,
                name=entry.name,
                expected_rate=float(expected[i]),
                observed_rate=float(observed[i]),
                deviation=float(observed[i] - expected[i]),
            )
            for i, entry in enumerate(catalog)
        ],
    )
