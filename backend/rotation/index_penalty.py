from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from rotation.models import RotationEventProvenance
from rotation.store import IndexWindowRow, RotationDataSource


@dataclass(frozen=True)
class IndexPenaltyResult:
    penalty: float  # 0.0 outside all windows, 0.5 inside one, 1.0 inside several
    matched_windows: list[IndexWindowRow] = field(default_factory=list)


def penalty_for_windows(windows: list[IndexWindowRow]) -> float:
    if not windows:
        return 0.0
    if len(windows) == 1:
        return 0.5
    return 1.0


def index_penalty(source: RotationDataSource, anchor_date: date) -> IndexPenaltyResult:
    """
    Passive index rebalances cause mechanical selling that is not rotation.
    Anchors inside one or more known rebalance windows are penalised.
    """

    windows = source.list_index_windows(anchor_date)
    return IndexPenaltyResult(penalty=penalty_for_windows(windows), matched_windows=list(windows))


def provenance_rows(cluster_id: str, result: IndexPenaltyResult) -> list[RotationEventProvenance]:
    if not result.matched_windows:
        return []
    weight = -result.penalty / len(result.matched_windows)
    return [
        RotationEventProvenance(
            cluster_id=cluster_id,
            accession=f"INDEX:{w.index_name}:{w.phase}",
            role="context",
            entity_id=None,
            contribution_weight=weight,
        )
        for w in result.matched_windows
    ]
