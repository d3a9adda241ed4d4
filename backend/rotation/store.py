from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from statistics import mean
from typing import Iterable, Optional, Protocol, Sequence

from sqlmodel import Session, select
from sqlmodel import col

from rotation.models import (
    BeneficialOwnershipSnapshot,
    DailyReturn,
    EventStudyResultRow,
    IndexWindow,
    MicrostructureSignal,
    OffexRatio,
    Position13F,
    RotationEvent,
    RotationEventProvenance,
    SecurityIssuerMap,
    ShortInterest,
    ShortInterestPoint,
    UhfPosition,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionSnapshot:
    holder: str
    identifier: str
    asof: date
    shares: float
    put_shares: float = 0.0
    call_shares: float = 0.0


@dataclass(frozen=True)
class BeneficialOwnershipRow:
    holder: str
    event_date: date
    shares_estimate: Optional[float]
    pct_of_class: Optional[float]


@dataclass(frozen=True)
class HighFrequencyPosition:
    holder: str
    identifier: str
    asof: date
    shares: float


@dataclass(frozen=True)
class ShortInterestReading:
    settle_date: date
    short_shares: float


@dataclass(frozen=True)
class DailyReturnRow:
    date: date
    ret: float
    benchmark_return: float


@dataclass(frozen=True)
class OffexRatioRow:
    as_of: date
    offex_pct: Optional[float]
    offex_shares: Optional[float]
    on_ex_shares: Optional[float]


@dataclass(frozen=True)
class ShortInterestPointRow:
    settlement_date: date
    short_interest: float


@dataclass(frozen=True)
class IndexWindowRow:
    index_name: str
    phase: str
    window_start: date
    window_end: date


@dataclass(frozen=True)
class MicrostructureSnapshot:
    vpin_avg: Optional[float]
    vpin_spike: bool
    lambda_avg: Optional[float]
    order_imbalance_avg: Optional[float]
    block_ratio_avg: Optional[float]
    flow_attribution_score: Optional[float]
    confidence: float


class RotationDataSource(Protocol):
    """
    Read/write surface the rotation engine needs from its data collaborator.

    Reads return normalized rows; any exception raised here propagates to the caller unchanged.
    """

    def list_security_identifiers(self, issuer: str) -> list[str]: ...

    def list_position_snapshots(
        self,
        identifiers: Sequence[str],
        date_from: date,
        date_to: date,
        holder: Optional[str] = None,
    ) -> list[PositionSnapshot]: ...

    def list_beneficial_ownership_snapshots(
        self, issuer: str, date_from: date, date_to: date
    ) -> list[BeneficialOwnershipRow]: ...

    def list_high_frequency_positions(
        self, identifiers: Sequence[str], date_from: date, date_to: date
    ) -> list[HighFrequencyPosition]: ...

    def list_short_interest(self, issuer: str, date_from: date, date_to: date) -> list[ShortInterestReading]: ...

    def list_daily_returns(self, issuer: str, date_from: date, date_to: date) -> list[DailyReturnRow]: ...

    def list_offex_ratios(self, symbol: str, date_from: date, date_to: date) -> list[OffexRatioRow]: ...

    def list_short_interest_points(self, symbol: str, date_to: date) -> list[ShortInterestPointRow]: ...

    def list_index_windows(self, on_date: date) -> list[IndexWindowRow]: ...

    def get_microstructure_signals(
        self, symbol: str, date_from: date, date_to: date
    ) -> Optional[MicrostructureSnapshot]: ...

    def upsert_rotation_event(self, record: RotationEvent) -> RotationEvent: ...

    def upsert_event_study_result(self, record: EventStudyResultRow) -> EventStudyResultRow: ...

    def upsert_provenance(self, rows: Iterable[RotationEventProvenance]) -> int: ...


def _avg(values: Iterable[Optional[float]]) -> Optional[float]:
    vs = [float(v) for v in values if v is not None]
    return mean(vs) if vs else None


@dataclass
class SqlRotationStore:
    """
    RotationDataSource backed by the SQLModel tables in rotation.models.

    Upserts commit immediately; a failed commit raises and nothing is retried here.
    """

    session: Session

    def list_security_identifiers(self, issuer: str) -> list[str]:
        rows = self.session.exec(
            select(SecurityIssuerMap.cusip).where(SecurityIssuerMap.issuer_cik == issuer)
        ).all()
        return sorted({str(c).strip().upper() for c in rows if c})

    def list_position_snapshots(
        self,
        identifiers: Sequence[str],
        date_from: date,
        date_to: date,
        holder: Optional[str] = None,
    ) -> list[PositionSnapshot]:
        if not identifiers:
            return []
        stmt = (
            select(Position13F)
            .where(col(Position13F.cusip).in_(list(identifiers)))
            .where(col(Position13F.asof) >= date_from)
            .where(col(Position13F.asof) <= date_to)
        )
        if holder is not None:
            stmt = stmt.where(Position13F.entity_id == holder)
        return [
            PositionSnapshot(
                holder=r.entity_id,
                identifier=r.cusip,
                asof=r.asof,
                shares=float(r.shares or 0.0),
                put_shares=float(r.opt_put_shares or 0.0),
                call_shares=float(r.opt_call_shares or 0.0),
            )
            for r in self.session.exec(stmt).all()
        ]

    def list_beneficial_ownership_snapshots(
        self, issuer: str, date_from: date, date_to: date
    ) -> list[BeneficialOwnershipRow]:
        rows = self.session.exec(
            select(BeneficialOwnershipSnapshot)
            .where(BeneficialOwnershipSnapshot.issuer_cik == issuer)
            .where(col(BeneficialOwnershipSnapshot.event_date) >= date_from)
            .where(col(BeneficialOwnershipSnapshot.event_date) <= date_to)
        ).all()
        return [
            BeneficialOwnershipRow(
                holder=r.holder_cik,
                event_date=r.event_date,
                shares_estimate=r.shares_est,
                pct_of_class=r.pct_of_class,
            )
            for r in rows
        ]

    def list_high_frequency_positions(
        self, identifiers: Sequence[str], date_from: date, date_to: date
    ) -> list[HighFrequencyPosition]:
        if not identifiers:
            return []
        rows = self.session.exec(
            select(UhfPosition)
            .where(col(UhfPosition.cusip).in_(list(identifiers)))
            .where(col(UhfPosition.asof) >= date_from)
            .where(col(UhfPosition.asof) <= date_to)
        ).all()
        return [
            HighFrequencyPosition(holder=r.holder_id, identifier=r.cusip, asof=r.asof, shares=float(r.shares or 0.0))
            for r in rows
        ]

    def list_short_interest(self, issuer: str, date_from: date, date_to: date) -> list[ShortInterestReading]:
        rows = self.session.exec(
            select(ShortInterest)
            .where(ShortInterest.cik == issuer)
            .where(col(ShortInterest.settle_date) >= date_from)
            .where(col(ShortInterest.settle_date) <= date_to)
        ).all()
        return [ShortInterestReading(settle_date=r.settle_date, short_shares=float(r.short_shares or 0.0)) for r in rows]

    def list_daily_returns(self, issuer: str, date_from: date, date_to: date) -> list[DailyReturnRow]:
        rows = self.session.exec(
            select(DailyReturn)
            .where(DailyReturn.cik == issuer)
            .where(col(DailyReturn.trade_date) >= date_from)
            .where(col(DailyReturn.trade_date) <= date_to)
            .order_by(col(DailyReturn.trade_date))
        ).all()
        return [
            DailyReturnRow(date=r.trade_date, ret=float(r.ret or 0.0), benchmark_return=float(r.benchmark_return or 0.0))
            for r in rows
        ]

    def list_offex_ratios(self, symbol: str, date_from: date, date_to: date) -> list[OffexRatioRow]:
        rows = self.session.exec(
            select(OffexRatio)
            .where(OffexRatio.symbol == symbol.upper())
            .where(OffexRatio.granularity == "daily")
            .where(col(OffexRatio.as_of) >= date_from)
            .where(col(OffexRatio.as_of) <= date_to)
            .order_by(col(OffexRatio.as_of))
        ).all()
        return [
            OffexRatioRow(as_of=r.as_of, offex_pct=r.offex_pct, offex_shares=r.offex_shares, on_ex_shares=r.on_ex_shares)
            for r in rows
        ]

    def list_short_interest_points(self, symbol: str, date_to: date) -> list[ShortInterestPointRow]:
        rows = self.session.exec(
            select(ShortInterestPoint)
            .where(ShortInterestPoint.symbol == symbol.upper())
            .where(col(ShortInterestPoint.settlement_date) <= date_to)
            .order_by(col(ShortInterestPoint.settlement_date))
        ).all()
        return [
            ShortInterestPointRow(settlement_date=r.settlement_date, short_interest=float(r.short_interest or 0.0))
            for r in rows
        ]

    def list_index_windows(self, on_date: date) -> list[IndexWindowRow]:
        rows = self.session.exec(
            select(IndexWindow)
            .where(col(IndexWindow.window_start) <= on_date)
            .where(col(IndexWindow.window_end) >= on_date)
            .order_by(col(IndexWindow.index_name), col(IndexWindow.phase))
        ).all()
        return [
            IndexWindowRow(index_name=r.index_name, phase=r.phase, window_start=r.window_start, window_end=r.window_end)
            for r in rows
        ]

    def get_microstructure_signals(
        self, symbol: str, date_from: date, date_to: date
    ) -> Optional[MicrostructureSnapshot]:
        rows = self.session.exec(
            select(MicrostructureSignal)
            .where(MicrostructureSignal.symbol == symbol.upper())
            .where(col(MicrostructureSignal.as_of) >= date_from)
            .where(col(MicrostructureSignal.as_of) <= date_to)
        ).all()
        if not rows:
            return None
        return MicrostructureSnapshot(
            vpin_avg=_avg(r.vpin for r in rows),
            vpin_spike=any(r.vpin_spike for r in rows),
            lambda_avg=_avg(r.kyle_lambda for r in rows),
            order_imbalance_avg=_avg(r.order_imbalance for r in rows),
            block_ratio_avg=_avg(r.block_ratio for r in rows),
            flow_attribution_score=_avg(r.flow_attribution_score for r in rows),
            confidence=float(_avg(r.confidence for r in rows) or 0.0),
        )

    def upsert_rotation_event(self, record: RotationEvent) -> RotationEvent:
        existing = self.session.get(RotationEvent, record.cluster_id)
        if existing is None:
            self.session.add(record)
            target = record
        else:
            for k, v in record.model_dump(exclude={"cluster_id", "created_at"}).items():
                setattr(existing, k, v)
            existing.updated_at = utcnow()
            target = existing
        self.session.commit()
        self.session.refresh(target)
        logger.debug("upserted rotation event %s (issuer=%s)", target.cluster_id, target.issuer_cik)
        return target

    def upsert_event_study_result(self, record: EventStudyResultRow) -> EventStudyResultRow:
        existing = self.session.exec(
            select(EventStudyResultRow)
            .where(EventStudyResultRow.symbol == record.symbol)
            .where(EventStudyResultRow.event_type == record.event_type)
            .where(EventStudyResultRow.anchor_date == record.anchor_date)
            .where(EventStudyResultRow.cik == record.cik)
        ).first()
        if existing is None:
            self.session.add(record)
            target = record
        else:
            for k, v in record.model_dump(exclude={"id"}).items():
                setattr(existing, k, v)
            existing.updated_at = utcnow()
            target = existing
        self.session.commit()
        self.session.refresh(target)
        return target

    def upsert_provenance(self, rows: Iterable[RotationEventProvenance]) -> int:
        n = 0
        for row in rows:
            existing = self.session.exec(
                select(RotationEventProvenance)
                .where(RotationEventProvenance.cluster_id == row.cluster_id)
                .where(RotationEventProvenance.accession == row.accession)
                .where(RotationEventProvenance.role == row.role)
            ).first()
            if existing is None:
                self.session.add(row)
            else:
                existing.entity_id = row.entity_id
                existing.contribution_weight = row.contribution_weight
            n += 1
        self.session.commit()
        return n
