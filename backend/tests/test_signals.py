from datetime import date

import pytest
from sqlmodel import Session

from rotation.dump_context import DumpContextBuilder, DumpContextCache
from rotation.models import Position13F, SecurityIssuerMap, ShortInterest, UhfPosition
from rotation.quarters import QuarterBounds
from rotation.signals import options_overlay, short_relief, uhf, uptake_from_filings
from rotation.store import SqlRotationStore

ISSUER = "0000320193"
CUSIP = "037833100"
Q1 = QuarterBounds(start=date(2024, 1, 1), end=date(2024, 3, 31))


def _setup(session: Session, extra_positions=()) -> tuple[SqlRotationStore, DumpContextBuilder]:
    session.add(SecurityIssuerMap(cusip=CUSIP, issuer_cik=ISSUER))
    positions = [
        ("seller", date(2023, 12, 31), 1000, 0, 0),
        ("seller", date(2024, 3, 31), 600, 0, 0),
        *extra_positions,
    ]
    for i, (holder, asof, shares, puts, calls) in enumerate(positions):
        session.add(
            Position13F(
                entity_id=holder,
                cusip=CUSIP,
                asof=asof,
                shares=shares,
                opt_put_shares=puts,
                opt_call_shares=calls,
                accession=f"acc-{i}",
            )
        )
    session.commit()
    store = SqlRotationStore(session=session)
    return store, DumpContextBuilder(source=store, cache=DumpContextCache())


def test_uptake_ratios(session: Session):
    store, builder = _setup(
        session,
        [
            ("buyer", date(2023, 12, 31), 100, 0, 0),
            ("buyer", date(2024, 3, 31), 200, 0, 0),
            ("late", date(2024, 3, 31), 100, 0, 0),
            ("late", date(2024, 6, 30), 400, 0, 0),
        ],
    )
    u = uptake_from_filings(builder, ISSUER, Q1)
    assert u.u_same == pytest.approx(0.25)
    assert u.u_next == pytest.approx(0.75)


def test_uptake_is_clamped_to_one(session: Session):
    store, builder = _setup(
        session,
        [
            ("whale", date(2023, 12, 31), 100, 0, 0),
            ("whale", date(2024, 3, 31), 5100, 0, 0),
        ],
    )
    u = uptake_from_filings(builder, ISSUER, Q1)
    assert u.u_same == 1.0


def test_no_dump_means_zero_signals(session: Session):
    session.add(SecurityIssuerMap(cusip=CUSIP, issuer_cik=ISSUER))
    session.add(Position13F(entity_id="buyer", cusip=CUSIP, asof=date(2023, 12, 31), shares=10, accession="x1"))
    session.add(Position13F(entity_id="buyer", cusip=CUSIP, asof=date(2024, 3, 31), shares=20, accession="x2"))
    session.add(ShortInterest(settle_date=date(2024, 3, 15), cik=ISSUER, short_shares=1000))
    session.add(ShortInterest(settle_date=date(2024, 4, 15), cik=ISSUER, short_shares=600))
    session.commit()
    store = SqlRotationStore(session=session)
    builder = DumpContextBuilder(source=store, cache=DumpContextCache())

    assert builder.build(ISSUER, Q1).total_dump_shares == 0
    assert uptake_from_filings(builder, ISSUER, Q1).u_same == 0.0
    assert uhf(builder, store, ISSUER, Q1).uhf_same == 0.0
    assert options_overlay(builder, ISSUER, Q1).opt_same == 0.0
    assert short_relief(builder, store, ISSUER, Q1) == 0.0


def test_short_relief_zero_without_any_positions(session: Session):
    session.add(SecurityIssuerMap(cusip=CUSIP, issuer_cik=ISSUER))
    session.add(ShortInterest(settle_date=date(2024, 3, 15), cik=ISSUER, short_shares=1000))
    session.add(ShortInterest(settle_date=date(2024, 4, 15), cik=ISSUER, short_shares=600))
    session.commit()
    store = SqlRotationStore(session=session)
    builder = DumpContextBuilder(source=store, cache=DumpContextCache())

    assert short_relief(builder, store, ISSUER, Q1) == 0.0


def test_uhf_uses_baseline_before_quarter(session: Session):
    store, builder = _setup(session)
    # baseline observation lies before the quarter start
    session.add(UhfPosition(holder_id="etf1", cusip=CUSIP, asof=date(2023, 12, 15), shares=1000, source="ETF"))
    session.add(UhfPosition(holder_id="etf1", cusip=CUSIP, asof=date(2024, 1, 15), shares=1100, source="ETF"))
    # duplicate holder+date rows are summed
    session.add(UhfPosition(holder_id="etf1", cusip=CUSIP, asof=date(2024, 4, 15), shares=1100, source="ETF"))
    session.add(UhfPosition(holder_id="etf1", cusip=CUSIP, asof=date(2024, 4, 15), shares=100, source="NPORT"))
    session.commit()

    s = uhf(builder, store, ISSUER, Q1)
    assert s.uhf_same == pytest.approx(100 / 400)
    assert s.uhf_next == pytest.approx(100 / 400)


def test_options_overlay(session: Session):
    store, builder = _setup(
        session,
        [
            ("opt", date(2023, 12, 31), 100, 50, 0),
            ("opt", date(2024, 3, 31), 100, 0, 50),
        ],
    )
    o = options_overlay(builder, ISSUER, Q1)
    # net options -50 -> +50
    assert o.opt_same == pytest.approx(100 / 400)
    assert o.opt_next == 0.0


def test_short_relief(session: Session):
    store, builder = _setup(session)
    session.add(ShortInterest(settle_date=date(2024, 3, 15), cik=ISSUER, short_shares=1000))
    session.add(ShortInterest(settle_date=date(2024, 4, 15), cik=ISSUER, short_shares=600))
    session.commit()
    assert short_relief(builder, store, ISSUER, Q1) == pytest.approx(0.4)


def test_short_relief_zero_when_short_interest_rises_or_missing(session: Session):
    store, builder = _setup(session)
    assert short_relief(builder, store, ISSUER, Q1) == 0.0

    session.add(ShortInterest(settle_date=date(2024, 3, 15), cik=ISSUER, short_shares=500))
    session.add(ShortInterest(settle_date=date(2024, 4, 15), cik=ISSUER, short_shares=900))
    session.commit()
    assert short_relief(builder, store, ISSUER, Q1) == 0.0


def test_signals_are_bounded(session: Session):
    store, builder = _setup(
        session,
        [
            ("b", date(2023, 12, 31), 1, 0, 0),
            ("b", date(2024, 3, 31), 10_000, 0, 10_000),
            ("c", date(2024, 3, 31), 1, 0, 0),
            ("c", date(2024, 6, 30), 10_000, 0, 10_000),
        ],
    )
    # high-frequency buying far larger than the 400 share dump, in both quarters
    session.add(UhfPosition(holder_id="etf1", cusip=CUSIP, asof=date(2023, 12, 15), shares=1, source="ETF"))
    session.add(UhfPosition(holder_id="etf1", cusip=CUSIP, asof=date(2024, 2, 15), shares=50_000, source="ETF"))
    session.add(UhfPosition(holder_id="etf1", cusip=CUSIP, asof=date(2024, 5, 15), shares=100_000, source="ETF"))
    # negative readings around the quarter end
    session.add(ShortInterest(settle_date=date(2024, 3, 15), cik=ISSUER, short_shares=1000))
    session.add(ShortInterest(settle_date=date(2024, 4, 15), cik=ISSUER, short_shares=-500))
    session.commit()

    u = uptake_from_filings(builder, ISSUER, Q1)
    h = uhf(builder, store, ISSUER, Q1)
    o = options_overlay(builder, ISSUER, Q1)
    sr = short_relief(builder, store, ISSUER, Q1)
    for v in (u.u_same, u.u_next, h.uhf_same, h.uhf_next, o.opt_same, o.opt_next, sr):
        assert 0.0 <= v <= 1.0
    assert h.uhf_same == 1.0
    assert h.uhf_next == 1.0
    assert sr == 1.0


def test_short_relief_is_zero_for_negative_or_rising_readings(session: Session):
    store, builder = _setup(session)
    session.add(ShortInterest(settle_date=date(2024, 3, 15), cik=ISSUER, short_shares=-200))
    session.add(ShortInterest(settle_date=date(2024, 4, 15), cik=ISSUER, short_shares=-900))
    session.commit()
    assert short_relief(builder, store, ISSUER, Q1) == 0.0
