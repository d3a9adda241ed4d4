from datetime import date

import pytest
from sqlmodel import Session

from rotation.dump_context import (
    DumpContextBuilder,
    DumpContextCache,
    aggregate_positions,
    compute_dump_context,
)
from rotation.models import Position13F, SecurityIssuerMap
from rotation.pipeline import derive_quarter_signals
from rotation.quarters import QuarterBounds
from rotation.store import PositionSnapshot, SqlRotationStore

ISSUER = "0000320193"
CUSIP = "037833100"
Q1 = QuarterBounds(start=date(2024, 1, 1), end=date(2024, 3, 31))


def _seed(session: Session) -> None:
    session.add(SecurityIssuerMap(cusip=CUSIP, issuer_cik=ISSUER, ticker="AAPL"))
    rows = [
        # seller: 1000 -> 600
        ("seller", date(2023, 12, 31), 1000, 0, 0, "a1"),
        ("seller", date(2024, 3, 31), 600, 0, 0, "a2"),
        # same-quarter buyer: 500 -> 700, calls 0 -> 50
        ("buyer", date(2023, 12, 31), 500, 0, 0, "b1"),
        ("buyer", date(2024, 3, 31), 700, 0, 50, "b2"),
        # next-quarter buyer: 100 -> 300
        ("late", date(2024, 3, 31), 100, 0, 0, "c1"),
        ("late", date(2024, 6, 30), 300, 0, 0, "c2"),
        # opened from an explicit zero row
        ("opener", date(2023, 12, 31), 0, 0, 0, "d1"),
        ("opener", date(2024, 3, 31), 400, 0, 0, "d2"),
    ]
    for holder, asof, shares, puts, calls, acc in rows:
        session.add(
            Position13F(
                entity_id=holder,
                cusip=CUSIP,
                asof=asof,
                shares=shares,
                opt_put_shares=puts,
                opt_call_shares=calls,
                accession=acc,
            )
        )
    session.commit()


class CountingStore(SqlRotationStore):
    identifier_reads = 0
    snapshot_reads = 0

    def list_security_identifiers(self, issuer):
        self.identifier_reads += 1
        return super().list_security_identifiers(issuer)

    def list_position_snapshots(self, identifiers, date_from, date_to, holder=None):
        self.snapshot_reads += 1
        return super().list_position_snapshots(identifiers, date_from, date_to, holder=holder)


def test_aggregate_positions_sums_duplicate_rows():
    rows = [
        PositionSnapshot(holder="h", identifier=CUSIP, asof=date(2024, 3, 31), shares=300, put_shares=5),
        PositionSnapshot(holder="h", identifier=CUSIP, asof=date(2024, 3, 31), shares=200, call_shares=7),
        PositionSnapshot(holder="h", identifier="X", asof=date(2024, 3, 31), shares=1),
    ]
    agg = aggregate_positions(rows)
    a = agg["h"][date(2024, 3, 31)]
    assert a.shares == 501
    assert a.opt_put == 5
    assert a.opt_call == 7
    assert a.net_options == 2


def test_compute_dump_context_accumulators(session: Session):
    _seed(session)
    store = SqlRotationStore(session=session)
    snaps = store.list_position_snapshots([CUSIP], Q1.prev_quarter_end, Q1.next_quarter_end)

    ctx = compute_dump_context(identifiers=[CUSIP], snapshots=snaps, quarter=Q1)

    assert ctx.identifiers == (CUSIP,)
    assert ctx.total_dump_shares == 400
    assert ctx.total_positive_same == 200
    assert ctx.total_positive_next == 200
    assert ctx.options_same == 50
    assert ctx.options_next == 0
    assert ctx.prev_quarter_end == date(2023, 12, 31)
    assert ctx.next_quarter_end == date(2024, 6, 30)

    seller = ctx.deltas_by_entity["seller"]
    assert len(seller) == 1
    assert seller[0].delta_shares == -400
    assert seller[0].pct_delta == pytest.approx(-0.4)

    # kept in the series, not accumulated
    opener = ctx.deltas_by_entity["opener"]
    assert opener[0].prev_shares == 0
    assert opener[0].pct_delta == 0.0


def test_compute_dump_context_no_identifiers_is_empty():
    ctx = compute_dump_context(identifiers=[], snapshots=[], quarter=Q1)
    assert ctx.deltas_by_entity == {}
    assert ctx.total_dump_shares == 0.0
    assert ctx.next_quarter_end == date(2024, 6, 30)


def test_builder_caches_per_issuer_quarter(session: Session):
    _seed(session)
    store = CountingStore(session=session)
    cache = DumpContextCache()
    builder = DumpContextBuilder(source=store, cache=cache)

    first = builder.build(ISSUER, Q1)
    second = builder.build(ISSUER, Q1)
    assert first is second
    assert store.identifier_reads == 1
    assert store.snapshot_reads == 1
    assert len(cache) == 1

    session.add(Position13F(entity_id="late_seller", cusip=CUSIP, asof=date(2023, 12, 31), shares=800, accession="ls1"))
    session.add(Position13F(entity_id="late_seller", cusip=CUSIP, asof=date(2024, 3, 31), shares=500, accession="ls2"))
    session.commit()
    # stale until cleared
    assert builder.build(ISSUER, Q1).total_dump_shares == first.total_dump_shares

    cache.clear()
    rebuilt = builder.build(ISSUER, Q1)
    assert store.identifier_reads == 2
    assert rebuilt.total_dump_shares == pytest.approx(first.total_dump_shares + 300)
    assert "late_seller" in rebuilt.deltas_by_entity
    assert "late_seller" not in first.deltas_by_entity


def test_all_signal_derivers_share_one_context_read(session: Session):
    _seed(session)
    store = CountingStore(session=session)
    builder = DumpContextBuilder(source=store, cache=DumpContextCache())

    derive_quarter_signals(builder=builder, source=store, issuer=ISSUER, quarter=Q1)

    assert store.identifier_reads == 1
    assert store.snapshot_reads == 1


def test_unmapped_issuer_builds_empty_context_and_caches_it(session: Session):
    store = CountingStore(session=session)
    builder = DumpContextBuilder(source=store, cache=DumpContextCache())
    ctx = builder.build("0000000001", Q1)
    builder.build("0000000001", Q1)
    assert ctx.identifiers == ()
    assert store.identifier_reads == 1
    assert store.snapshot_reads == 0
