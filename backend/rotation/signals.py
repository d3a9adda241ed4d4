from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from rotation.dump_context import DumpContextBuilder
from rotation.quarters import QuarterBounds
from rotation.stats import clamp
from rotation.store import RotationDataSource, ShortInterestReading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UptakeSignal:
    u_same: float = 0.0
    u_next: float = 0.0


@dataclass(frozen=True)
class UhfSignal:
    uhf_same: float = 0.0
    uhf_next: float = 0.0


@dataclass(frozen=True)
class OptionsSignal:
    opt_same: float = 0.0
    opt_next: float = 0.0


def _ratio(numerator: float, denominator: float) -> float:
    return clamp(numerator / denominator, 0.0, 1.0)


def uptake_from_filings(builder: DumpContextBuilder, issuer: str, quarter: QuarterBounds) -> UptakeSignal:
    """
    Share of dumped shares absorbed by other 13F holders' increases (same / next quarter).
    """

    ctx = builder.build(issuer, quarter)
    if ctx.total_dump_shares == 0:
        return UptakeSignal()
    return UptakeSignal(
        u_same=_ratio(ctx.total_positive_same, ctx.total_dump_shares),
        u_next=_ratio(ctx.total_positive_next, ctx.total_dump_shares),
    )


def uhf(
    builder: DumpContextBuilder,
    source: RotationDataSource,
    issuer: str,
    quarter: QuarterBounds,
    *,
    baseline_days: int = 31,
) -> UhfSignal:
    """
    Faster-moving absorption proxy from N-PORT / ETF holder positions.

    Reads `baseline_days` before the quarter start so the first in-quarter observation
    has a predecessor to diff against.
    """

    ctx = builder.build(issuer, quarter)
    if ctx.total_dump_shares == 0 or not ctx.identifiers:
        return UhfSignal()

    baseline_start = quarter.start - timedelta(days=baseline_days)
    rows = source.list_high_frequency_positions(ctx.identifiers, baseline_start, ctx.next_quarter_end)

    series: dict[str, dict[date, float]] = {}
    for r in rows:
        if not r.holder:
            continue
        by_date = series.setdefault(r.holder, {})
        by_date[r.asof] = by_date.get(r.asof, 0.0) + float(r.shares or 0.0)

    same = 0.0
    nxt = 0.0
    for holder in sorted(series):
        points = sorted(series[holder].items())
        for (_, prev_shares), (d, cur_shares) in zip(points, points[1:]):
            delta = cur_shares - prev_shares
            if delta <= 0:
                continue
            if quarter.contains(d):
                same += delta
            elif quarter.end < d <= ctx.next_quarter_end:
                nxt += delta

    return UhfSignal(
        uhf_same=_ratio(same, ctx.total_dump_shares),
        uhf_next=_ratio(nxt, ctx.total_dump_shares),
    )


def options_overlay(builder: DumpContextBuilder, issuer: str, quarter: QuarterBounds) -> OptionsSignal:
    ctx = builder.build(issuer, quarter)
    if ctx.total_dump_shares == 0:
        return OptionsSignal()
    return OptionsSignal(
        opt_same=_ratio(ctx.options_same, ctx.total_dump_shares),
        opt_next=_ratio(ctx.options_next, ctx.total_dump_shares),
    )


def _nearest_around(
    readings: list[ShortInterestReading], anchor: date
) -> tuple[Optional[ShortInterestReading], Optional[ShortInterestReading]]:
    before: Optional[ShortInterestReading] = None
    after: Optional[ShortInterestReading] = None
    for r in sorted(readings, key=lambda x: x.settle_date):
        if r.settle_date <= anchor and (before is None or r.settle_date > before.settle_date):
            before = r
        if r.settle_date >= anchor and (after is None or r.settle_date < after.settle_date):
            after = r
    return before, after


def short_relief(
    builder: DumpContextBuilder,
    source: RotationDataSource,
    issuer: str,
    quarter: QuarterBounds,
) -> float:
    """
    Fraction of short interest that unwound across the quarter end (0..1).
    """

    ctx = builder.build(issuer, quarter)
    if ctx.total_dump_shares == 0:
        return 0.0
    readings = source.list_short_interest(issuer, ctx.prev_quarter_end, ctx.next_quarter_end)
    before, after = _nearest_around(readings, quarter.end)
    if before is None or after is None:
        return 0.0

    before_short = max(float(before.short_shares), 0.0)
    after_short = max(float(after.short_shares), 0.0)
    if before_short <= 0:
        return 0.0
    return clamp(max(before_short - after_short, 0.0) / before_short, 0.0, 1.0)
