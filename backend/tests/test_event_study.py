from datetime import date, timedelta

import pytest
from sqlmodel import Session, select

from rotation.event_study import HORIZONS, compute_abnormal_return_stats, event_study
from rotation.models import DailyReturn, EventStudyResultRow, OffexRatio, ShortInterestPoint
from rotation.store import SqlRotationStore

ISSUER = "0000320193"
ANCHOR = date(2024, 3, 1)


def _business_days(start: date, n: int) -> list[date]:
    out = []
    d = start
    while len(out) < n:
        if d.weekday() < 5:
            out.append(d)
        d += timedelta(days=1)
    return out


def _seed_returns(session: Session, abnormal: float = 0.01) -> list[date]:
    days = _business_days(ANCHOR - timedelta(days=10), 80)
    for d in days:
        session.add(DailyReturn(cik=ISSUER, trade_date=d, ret=abnormal + 0.002, benchmark_return=0.002))
    session.commit()
    return days


def test_no_rows_on_or_after_anchor_is_all_zero():
    r = compute_abnormal_return_stats(anchor_date=ANCHOR, dates=[ANCHOR - timedelta(days=1)], abnormal=[0.5])
    assert (r.car, r.tt_plus20, r.max_ret, r.max_drawdown) == (0.0, 0, 0.0, 0.0)
    assert set(r.horizons().values()) == {0.0}


def test_car_and_horizons_constant_abnormal_return():
    dates = _business_days(ANCHOR - timedelta(days=14), 100)
    abnormal = [0.01] * len(dates)
    r = compute_abnormal_return_stats(anchor_date=ANCHOR, dates=dates, abnormal=abnormal)

    anchor_idx = dates.index(ANCHOR)
    assert anchor_idx >= 5
    # rows -5..+20 inclusive
    assert r.car == pytest.approx(0.26)
    assert r.tt_plus20 == (dates[anchor_idx + 20] - ANCHOR).days
    assert r.max_ret == pytest.approx(0.65)
    assert r.max_drawdown == 0.0
    h = r.horizons()
    assert list(h) == list(HORIZONS)
    assert h[5] == pytest.approx(0.06)
    assert h[65] == pytest.approx(0.66)


def test_drawdown_tracks_running_trough():
    dates = _business_days(ANCHOR, 10)
    r = compute_abnormal_return_stats(
        anchor_date=ANCHOR, dates=dates, abnormal=[-0.02, -0.03, 0.01, 0.05, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]
    )
    assert r.max_drawdown == pytest.approx(-0.05)
    assert r.max_ret == pytest.approx(0.01)
    # fewer than 21 rows after the anchor
    assert r.tt_plus20 == 0


def test_anchor_on_non_trading_day_uses_next_row():
    saturday = date(2024, 3, 2)
    dates = _business_days(date(2024, 2, 26), 10)
    r = compute_abnormal_return_stats(anchor_date=saturday, dates=dates, abnormal=[0.0] * 5 + [1.0] + [0.0] * 4)
    # first row on/after Saturday is Monday 03-04, which carries the 1.0
    assert r.max_ret == pytest.approx(1.0)


def test_event_study_is_deterministic(session: Session):
    _seed_returns(session)
    store = SqlRotationStore(session=session)
    a = event_study(store, ANCHOR, ISSUER)
    b = event_study(store, ANCHOR, ISSUER)
    assert a == b
    assert a.car > 0


def test_event_study_without_symbol_does_not_persist(session: Session):
    _seed_returns(session)
    event_study(SqlRotationStore(session=session), ANCHOR, ISSUER)
    assert session.exec(select(EventStudyResultRow)).all() == []


def test_event_study_persists_with_covariates_and_upserts(session: Session):
    _seed_returns(session)
    session.add(OffexRatio(symbol="AAPL", as_of=ANCHOR - timedelta(days=1), offex_pct=0.40))
    session.add(OffexRatio(symbol="AAPL", as_of=ANCHOR, offex_pct=0.45, offex_shares=300, on_ex_shares=100))
    session.add(OffexRatio(symbol="AAPL", as_of=ANCHOR + timedelta(days=5), offex_pct=0.50))
    session.add(ShortInterestPoint(symbol="AAPL", settlement_date=ANCHOR - timedelta(days=15), short_interest=1000))
    session.add(ShortInterestPoint(symbol="AAPL", settlement_date=ANCHOR + timedelta(days=14), short_interest=700))
    session.commit()
    store = SqlRotationStore(session=session)

    result = event_study(store, ANCHOR, ISSUER, "aapl")
    event_study(store, ANCHOR, ISSUER, "AAPL")

    rows = session.exec(select(EventStudyResultRow)).all()
    assert len(rows) == 1
    row = rows[0]
    assert row.symbol == "AAPL"
    assert row.event_type == "Rotation"
    assert row.car_m5_p20 == pytest.approx(result.car)
    assert row.offex_covariates == {"d-1": 0.40, "d+0": 0.45, "d+5": 0.50}
    assert row.short_interest_covariate == pytest.approx(-300.0)
    assert row.iex_share == pytest.approx(0.25)
