from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from rotation.quarters import QuarterBounds
from rotation.store import PositionSnapshot, RotationDataSource

logger = logging.getLogger(__name__)


@dataclass
class PositionAggregate:
    shares: float = 0.0
    opt_put: float = 0.0
    opt_call: float = 0.0

    @property
    def net_options(self) -> float:
        return self.opt_call - self.opt_put


@dataclass(frozen=True)
class EntityDelta:
    date: date
    delta_shares: float
    pct_delta: float
    opt_delta: float
    prev_shares: float


@dataclass(frozen=True)
class DumpComputationResult:
    identifiers: tuple[str, ...]
    deltas_by_entity: dict[str, list[EntityDelta]]
    total_dump_shares: float
    total_positive_same: float
    total_positive_next: float
    options_same: float
    options_next: float
    quarter: QuarterBounds
    prev_quarter_end: date
    next_quarter_end: date

    @classmethod
    def empty(cls, quarter: QuarterBounds) -> "DumpComputationResult":
        return cls(
            identifiers=(),
            deltas_by_entity={},
            total_dump_shares=0.0,
            total_positive_same=0.0,
            total_positive_next=0.0,
            options_same=0.0,
            options_next=0.0,
            quarter=quarter,
            prev_quarter_end=quarter.prev_quarter_end,
            next_quarter_end=quarter.next_quarter_end,
        )


CacheKey = tuple[str, date, date]


@dataclass
class DumpContextCache:
    """
    Process-lifetime memo of dump contexts, keyed by (issuer, quarter start, quarter end).

    No eviction; clear() drops everything. Two callers racing on the same key may both
    build the context; the last write wins and both results are equivalent.
    """

    _entries: dict[CacheKey, DumpComputationResult] = field(default_factory=dict)

    @staticmethod
    def key(issuer: str, quarter: QuarterBounds) -> CacheKey:
        return (issuer, quarter.start, quarter.end)

    def get(self, issuer: str, quarter: QuarterBounds) -> Optional[DumpComputationResult]:
        return self._entries.get(self.key(issuer, quarter))

    def put(self, issuer: str, quarter: QuarterBounds, result: DumpComputationResult) -> None:
        self._entries[self.key(issuer, quarter)] = result

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def aggregate_positions(rows: Iterable[PositionSnapshot]) -> dict[str, dict[date, PositionAggregate]]:
    """
    holder -> asof -> summed shares/puts/calls. Duplicate rows are summed, never overwritten.
    """

    out: dict[str, dict[date, PositionAggregate]] = {}
    for r in rows:
        if not r.holder or r.asof is None:
            continue
        by_date = out.setdefault(r.holder, {})
        agg = by_date.get(r.asof)
        if agg is None:
            agg = PositionAggregate()
            by_date[r.asof] = agg
        agg.shares += float(r.shares or 0.0)
        agg.opt_put += float(r.put_shares or 0.0)
        agg.opt_call += float(r.call_shares or 0.0)
    return out


def compute_dump_context(
    *,
    identifiers: Iterable[str],
    snapshots: Iterable[PositionSnapshot],
    quarter: QuarterBounds,
) -> DumpComputationResult:
    idents = tuple(identifiers)
    if not idents:
        return DumpComputationResult.empty(quarter)

    next_qe = quarter.next_quarter_end
    aggregates = aggregate_positions(snapshots)

    deltas_by_entity: dict[str, list[EntityDelta]] = {}
    total_dump = 0.0
    positive_same = 0.0
    positive_next = 0.0
    options_same = 0.0
    options_next = 0.0

    for holder in sorted(aggregates):
        entries = sorted(aggregates[holder].items())
        deltas: list[EntityDelta] = []
        for (_, prev), (d, cur) in zip(entries, entries[1:]):
            prev_shares = prev.shares
            delta_shares = cur.shares - prev.shares
            opt_delta = cur.net_options - prev.net_options
            if prev_shares == 0:
                # Ratio is undefined; keep the delta in the series but leave accumulators alone.
                deltas.append(EntityDelta(d, delta_shares, 0.0, opt_delta, prev_shares))
                continue

            deltas.append(EntityDelta(d, delta_shares, delta_shares / prev_shares, opt_delta, prev_shares))
            if quarter.contains(d):
                if delta_shares < 0:
                    total_dump += abs(delta_shares)
                elif delta_shares > 0:
                    positive_same += delta_shares
                if opt_delta > 0:
                    options_same += opt_delta
            elif quarter.end < d <= next_qe:
                if delta_shares > 0:
                    positive_next += delta_shares
                if opt_delta > 0:
                    options_next += opt_delta
        deltas_by_entity[holder] = deltas

    return DumpComputationResult(
        identifiers=idents,
        deltas_by_entity=deltas_by_entity,
        total_dump_shares=total_dump,
        total_positive_same=positive_same,
        total_positive_next=positive_next,
        options_same=options_same,
        options_next=options_next,
        quarter=quarter,
        prev_quarter_end=quarter.prev_quarter_end,
        next_quarter_end=next_qe,
    )


@dataclass
class DumpContextBuilder:
    source: RotationDataSource
    cache: DumpContextCache = field(default_factory=DumpContextCache)

    def build(self, issuer: str, quarter: QuarterBounds) -> DumpComputationResult:
        cached = self.cache.get(issuer, quarter)
        if cached is not None:
            logger.debug("dump context cache hit issuer=%s quarter=%s..%s", issuer, quarter.start, quarter.end)
            return cached

        identifiers = self.source.list_security_identifiers(issuer)
        if not identifiers:
            logger.info("no security identifiers mapped for issuer=%s; dump context is empty", issuer)
            result = DumpComputationResult.empty(quarter)
        else:
            snapshots = self.source.list_position_snapshots(
                identifiers, quarter.prev_quarter_end, quarter.next_quarter_end
            )
            result = compute_dump_context(identifiers=identifiers, snapshots=snapshots, quarter=quarter)
            logger.debug(
                "built dump context issuer=%s quarter=%s holders=%d dump_shares=%.0f",
                issuer,
                quarter.label,
                len(result.deltas_by_entity),
                result.total_dump_shares,
            )

        self.cache.put(issuer, quarter, result)
        return result
