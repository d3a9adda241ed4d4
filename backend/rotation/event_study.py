from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Optional

from rotation.models import EventStudyResultRow
from rotation.store import RotationDataSource

logger = logging.getLogger(__name__)

WINDOW_BEFORE_DAYS = 10
WINDOW_AFTER_DAYS = 120
CAR_ROWS_BEFORE = 5
CAR_ROWS_AFTER = 20
LOOKAHEAD_ROWS = 65
HORIZONS = (5, 10, 20, 40, 65)
EVENT_TYPE = "Rotation"


@dataclass(frozen=True)
class EventStudyResult:
    anchor_date: date
    car: float = 0.0
    tt_plus20: int = 0
    max_ret: float = 0.0
    max_drawdown: float = 0.0
    plus_1w: float = 0.0
    plus_2w: float = 0.0
    plus_4w: float = 0.0
    plus_8w: float = 0.0
    plus_13w: float = 0.0
    offex_covariates: dict[str, Optional[float]] = field(default_factory=dict)
    short_interest_change: Optional[float] = None
    iex_share: Optional[float] = None

    def horizons(self) -> dict[int, float]:
        return dict(zip(HORIZONS, (self.plus_1w, self.plus_2w, self.plus_4w, self.plus_8w, self.plus_13w)))


def _cumulative(values: list[float], start: int, end: int) -> float:
    total = 0.0
    for v in values[start : end + 1]:
        total += v
    return total


def compute_abnormal_return_stats(
    *,
    anchor_date: date,
    dates: list[date],
    abnormal: list[float],
) -> EventStudyResult:
    """
    CAR[-5, +20] rows, days to the +20 row, running peak/trough over 65 rows and
    cumulative horizons (+5/+10/+20/+40/+65 rows), all measured from the first row on or
    after the anchor. No such row -> all zeros.
    """

    anchor_idx = next((i for i, d in enumerate(dates) if d >= anchor_date), None)
    if anchor_idx is None:
        return EventStudyResult(anchor_date=anchor_date)

    last = len(abnormal) - 1
    car = _cumulative(abnormal, max(0, anchor_idx - CAR_ROWS_BEFORE), min(last, anchor_idx + CAR_ROWS_AFTER))

    tt_plus20 = 0
    if anchor_idx + CAR_ROWS_AFTER <= last:
        tt_plus20 = max(0, (dates[anchor_idx + CAR_ROWS_AFTER] - anchor_date).days)

    running = 0.0
    max_ret = 0.0
    max_drawdown = 0.0
    for v in abnormal[anchor_idx : anchor_idx + LOOKAHEAD_ROWS]:
        running += v
        max_ret = max(max_ret, running)
        max_drawdown = min(max_drawdown, running)

    totals = [_cumulative(abnormal, anchor_idx, min(last, anchor_idx + h)) for h in HORIZONS]

    return EventStudyResult(
        anchor_date=anchor_date,
        car=car,
        tt_plus20=tt_plus20,
        max_ret=max_ret,
        max_drawdown=max_drawdown,
        plus_1w=totals[0],
        plus_2w=totals[1],
        plus_4w=totals[2],
        plus_8w=totals[3],
        plus_13w=totals[4],
    )


def _offex_key(diff_days: int) -> str:
    return f"d+{diff_days}" if diff_days >= 0 else f"d{diff_days}"


def _covariates(
    source: RotationDataSource, symbol: str, anchor_date: date
) -> tuple[dict[str, Optional[float]], Optional[float], Optional[float]]:
    offex: dict[str, Optional[float]] = {}
    iex_share: Optional[float] = None
    for row in source.list_offex_ratios(symbol, anchor_date - timedelta(days=1), anchor_date + timedelta(days=20)):
        offex[_offex_key((row.as_of - anchor_date).days)] = row.offex_pct
        if row.as_of == anchor_date and row.offex_shares is not None and row.on_ex_shares is not None:
            total = float(row.offex_shares) + float(row.on_ex_shares)
            if total > 0:
                iex_share = float(row.on_ex_shares) / total

    before = None
    after = None
    for p in source.list_short_interest_points(symbol, anchor_date + timedelta(days=90)):
        if p.settlement_date < anchor_date:
            before = p
        elif after is None:
            after = p
    si_change = None
    if before is not None and after is not None:
        si_change = float(after.short_interest) - float(before.short_interest)

    return offex, si_change, iex_share


def to_record(result: EventStudyResult, *, symbol: str, issuer: str) -> EventStudyResultRow:
    return EventStudyResultRow(
        symbol=symbol.upper(),
        event_type=EVENT_TYPE,
        anchor_date=result.anchor_date,
        cik=issuer or "",
        car_m5_p20=result.car,
        tt_plus20_days=result.tt_plus20,
        max_ret_w13=result.max_ret,
        max_drawdown_w13=result.max_drawdown,
        plus_1w=result.plus_1w,
        plus_2w=result.plus_2w,
        plus_4w=result.plus_4w,
        plus_8w=result.plus_8w,
        plus_13w=result.plus_13w,
        offex_covariates=dict(result.offex_covariates),
        short_interest_covariate=result.short_interest_change,
        iex_share=result.iex_share,
    )


def compute_event_study(
    source: RotationDataSource,
    anchor_date: date,
    issuer: str,
    symbol: Optional[str] = None,
) -> EventStudyResult:
    """
    Market reaction around a dump anchor. Read-only; with a symbol the off-exchange /
    short-interest covariates are attached, missing covariates are left empty.
    """

    rows = source.list_daily_returns(
        issuer,
        anchor_date - timedelta(days=WINDOW_BEFORE_DAYS),
        anchor_date + timedelta(days=WINDOW_AFTER_DAYS),
    )
    rows = sorted(rows, key=lambda r: r.date)
    result = compute_abnormal_return_stats(
        anchor_date=anchor_date,
        dates=[r.date for r in rows],
        abnormal=[float(r.ret) - float(r.benchmark_return) for r in rows],
    )

    if not symbol:
        return result

    offex, si_change, iex_share = _covariates(source, symbol.upper(), anchor_date)
    return replace(result, offex_covariates=offex, short_interest_change=si_change, iex_share=iex_share)


def persist_event_study(source: RotationDataSource, result: EventStudyResult, *, symbol: str, issuer: str) -> None:
    source.upsert_event_study_result(to_record(result, symbol=symbol, issuer=issuer))
    logger.info(
        "event study symbol=%s anchor=%s car=%.4f tt_plus20=%d",
        symbol.upper(),
        result.anchor_date,
        result.car,
        result.tt_plus20,
    )


def event_study(
    source: RotationDataSource,
    anchor_date: date,
    issuer: str,
    symbol: Optional[str] = None,
) -> EventStudyResult:
    """
    Computes the event study and, with a symbol, upserts it. A failed write propagates.
    """

    result = compute_event_study(source, anchor_date, issuer, symbol)
    if symbol:
        persist_event_study(source, result, symbol=symbol, issuer=issuer)
    return result
