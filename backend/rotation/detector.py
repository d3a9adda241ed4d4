from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional, Sequence
from uuid import uuid4

from rotation.dump_context import DumpContextBuilder
from rotation.quarters import QuarterBounds
from rotation.settings import settings
from rotation.stats import robust_z_score
from rotation.store import BeneficialOwnershipRow, RotationDataSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionParams:
    min_dump_pct: float = 0.30
    bo_lookback_days: int = 190
    history_lookback_days: int = 1095
    min_history_quarters: int = 12
    fallback_dump_z: float = 2.0
    mad_consistency: float = 1.4826

    @classmethod
    def from_settings(cls) -> "DetectionParams":
        return cls(
            min_dump_pct=settings.min_dump_pct,
            bo_lookback_days=settings.bo_lookback_days,
            history_lookback_days=settings.history_lookback_days,
            min_history_quarters=settings.min_history_quarters,
            fallback_dump_z=settings.fallback_dump_z,
            mad_consistency=settings.mad_consistency,
        )


@dataclass(frozen=True)
class DumpEvent:
    cluster_id: str
    anchor_date: date
    seller: str
    delta: float  # signed pct change, e.g. -0.40
    abs_shares: float
    dump_z: float
    source: str = "13f"  # 13f|bo


def _new_cluster_id() -> str:
    return str(uuid4())


def historical_reductions(
    *,
    rows_by_date: dict[date, dict[str, float]],
    identifiers: Sequence[str],
) -> list[float]:
    """
    Per consecutive pair of report dates, the summed size of per-identifier reductions.
    Increases are ignored; pairs with no reduction are dropped.
    """

    dates = sorted(rows_by_date)
    out: list[float] = []
    for prev_d, cur_d in zip(dates, dates[1:]):
        prev = rows_by_date[prev_d]
        cur = rows_by_date[cur_d]
        total = 0.0
        for ident in identifiers:
            delta = cur.get(ident, 0.0) - prev.get(ident, 0.0)
            if delta < 0:
                total += abs(delta)
        if total > 0:
            out.append(total)
    return out


def compute_dump_z(
    *,
    source: RotationDataSource,
    holder: str,
    identifiers: Sequence[str],
    current_delta: float,
    anchor_date: date,
    params: DetectionParams,
) -> float:
    """
    Anomaly score of a reduction against the holder's own trailing history.

    With fewer than `min_history_quarters` historical reductions there is no basis for a
    robust z-score, so a coarse heuristic is used instead: `fallback_dump_z` when the
    reduction clears the dump threshold, else 0.
    """

    if not identifiers:
        return 0.0

    lookback = anchor_date - timedelta(days=params.history_lookback_days)
    rows = source.list_position_snapshots(identifiers, lookback, anchor_date, holder=holder)

    by_date: dict[date, dict[str, float]] = {}
    for r in rows:
        if r.holder != holder:
            continue
        per_ident = by_date.setdefault(r.asof, {})
        per_ident[r.identifier] = per_ident.get(r.identifier, 0.0) + float(r.shares or 0.0)

    history = historical_reductions(rows_by_date=by_date, identifiers=identifiers)
    if len(history) < params.min_history_quarters:
        return params.fallback_dump_z if abs(current_delta) >= params.min_dump_pct else 0.0
    return abs(robust_z_score(abs(current_delta), history, consistency=params.mad_consistency))


def _bo_magnitude(row: BeneficialOwnershipRow) -> float:
    if row.shares_estimate is not None:
        return float(row.shares_estimate)
    if row.pct_of_class is not None:
        return float(row.pct_of_class)
    return 0.0


@dataclass
class DumpEventDetector:
    source: RotationDataSource
    builder: DumpContextBuilder
    params: DetectionParams = field(default_factory=DetectionParams.from_settings)

    def _qualifies(self, quarter: QuarterBounds, d: date, pct_delta: float) -> bool:
        return quarter.contains(d) and pct_delta <= -self.params.min_dump_pct

    def detect(self, issuer: str, quarter: QuarterBounds) -> list[DumpEvent]:
        context = self.builder.build(issuer, quarter)
        events: list[DumpEvent] = []

        for holder, deltas in context.deltas_by_entity.items():
            for d in deltas:
                if d.prev_shares <= 0:
                    continue
                if not self._qualifies(quarter, d.date, d.pct_delta):
                    continue
                dump_z = compute_dump_z(
                    source=self.source,
                    holder=holder,
                    identifiers=context.identifiers,
                    current_delta=d.pct_delta,
                    anchor_date=d.date,
                    params=self.params,
                )
                events.append(
                    DumpEvent(
                        cluster_id=_new_cluster_id(),
                        anchor_date=d.date,
                        seller=holder,
                        delta=d.pct_delta,
                        abs_shares=abs(d.delta_shares),
                        dump_z=dump_z,
                        source="13f",
                    )
                )

        events.extend(self._detect_beneficial_ownership(issuer, quarter, context.identifiers))

        logger.info(
            "detected %d dump events for issuer=%s quarter=%s (threshold=%.2f)",
            len(events),
            issuer,
            quarter.label,
            self.params.min_dump_pct,
        )
        return events

    def _detect_beneficial_ownership(
        self, issuer: str, quarter: QuarterBounds, identifiers: Sequence[str]
    ) -> list[DumpEvent]:
        window_start = quarter.start - timedelta(days=self.params.bo_lookback_days)
        rows = self.source.list_beneficial_ownership_snapshots(issuer, window_start, quarter.end)

        by_holder: dict[str, list[BeneficialOwnershipRow]] = {}
        for r in rows:
            if not r.holder:
                continue
            by_holder.setdefault(r.holder, []).append(r)

        events: list[DumpEvent] = []
        for holder in sorted(by_holder):
            snaps = sorted(by_holder[holder], key=lambda r: r.event_date)
            previous: Optional[BeneficialOwnershipRow] = None
            for row in snaps:
                if previous is None:
                    previous = row
                    continue
                prev_value = _bo_magnitude(previous)
                cur_value = _bo_magnitude(row)
                previous = row
                if prev_value <= 0:
                    continue
                pct_delta = (cur_value - prev_value) / prev_value
                if not self._qualifies(quarter, row.event_date, pct_delta):
                    continue
                dump_z = compute_dump_z(
                    source=self.source,
                    holder=holder,
                    identifiers=identifiers,
                    current_delta=pct_delta,
                    anchor_date=row.event_date,
                    params=self.params,
                )
                events.append(
                    DumpEvent(
                        cluster_id=_new_cluster_id(),
                        anchor_date=row.event_date,
                        seller=holder,
                        delta=pct_delta,
                        abs_shares=abs(cur_value - prev_value),
                        dump_z=dump_z,
                        source="bo",
                    )
                )
        return events
