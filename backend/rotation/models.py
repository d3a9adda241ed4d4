from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityIssuerMap(SQLModel, table=True):
    """
    Issuer (CIK) -> security identifier (CUSIP) mapping.

    One issuer usually has one common-stock CUSIP, but share classes and
    re-issued CUSIPs mean several rows per issuer are normal.
    """

    __tablename__ = "cusip_issuer_map"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    cusip: str = Field(index=True)
    issuer_cik: str = Field(index=True)
    ticker: Optional[str] = Field(default=None, index=True)
    name: Optional[str] = None
    source: str = Field(default="manual", index=True)  # manual|csv|openfigi

    created_at: datetime = Field(default_factory=utcnow, index=True)

    __table_args__ = (UniqueConstraint("cusip", "issuer_cik", name="uq_cusip_issuer"),)


class Position13F(SQLModel, table=True):
    __tablename__ = "positions_13f"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    entity_id: str = Field(index=True)  # filer / holder
    cusip: str = Field(index=True)
    asof: date = Field(index=True)  # report period

    shares: float = 0.0
    opt_put_shares: float = 0.0
    opt_call_shares: float = 0.0

    accession: Optional[str] = Field(default=None, index=True)

    __table_args__ = (
        UniqueConstraint("entity_id", "cusip", "asof", "accession", name="uq_position_13f"),
        Index("ix_position_13f_cusip_asof", "cusip", "asof"),
    )


class BeneficialOwnershipSnapshot(SQLModel, table=True):
    """
    Schedule 13D/13G (5%+ holder) disclosures.
    shares_est is preferred; pct_of_class is the fallback magnitude when shares are not reported.
    """

    __tablename__ = "bo_snapshots"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    issuer_cik: str = Field(index=True)
    holder_cik: str = Field(index=True)
    event_date: date = Field(index=True)
    filed_date: Optional[date] = Field(default=None, index=True)

    pct_of_class: Optional[float] = None
    shares_est: Optional[float] = None

    accession: Optional[str] = Field(default=None, index=True)

    __table_args__ = (
        UniqueConstraint("issuer_cik", "holder_cik", "event_date", "accession", name="uq_bo_snapshot"),
        Index("ix_bo_snapshot_issuer_event_date", "issuer_cik", "event_date"),
    )


class UhfPosition(SQLModel, table=True):
    """
    Ultra-high-frequency holder positions (monthly N-PORT, daily ETF holdings).
    """

    __tablename__ = "uhf_positions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    holder_id: str = Field(index=True)
    cusip: str = Field(index=True)
    asof: date = Field(index=True)
    shares: float = 0.0
    source: str = Field(default="ETF", index=True)  # NPORT|ETF

    __table_args__ = (
        UniqueConstraint("holder_id", "cusip", "asof", "source", name="uq_uhf_position"),
        Index("ix_uhf_position_cusip_asof", "cusip", "asof"),
    )


class ShortInterest(SQLModel, table=True):
    __tablename__ = "short_interest"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    settle_date: date = Field(index=True)
    cik: str = Field(index=True)
    short_shares: float = 0.0

    __table_args__ = (UniqueConstraint("settle_date", "cik", name="uq_short_interest_settle_cik"),)


class DailyReturn(SQLModel, table=True):
    __tablename__ = "daily_returns"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    cik: str = Field(index=True)
    trade_date: date = Field(index=True)
    ret: float = 0.0  # simple daily return
    benchmark_return: float = 0.0

    __table_args__ = (
        UniqueConstraint("cik", "trade_date", name="uq_daily_return_cik_date"),
        Index("ix_daily_return_cik_trade_date", "cik", "trade_date"),
    )


class IndexWindow(SQLModel, table=True):
    """
    Known index rebalance windows (Russell reconstitution, S&P quarterly rebalance, ...).
    """

    __tablename__ = "index_windows"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    index_name: str = Field(index=True)
    phase: str = Field(index=True)  # e.g. rank_day, preliminary, effective
    window_start: date = Field(index=True)
    window_end: date = Field(index=True)


class OffexRatio(SQLModel, table=True):
    __tablename__ = "micro_offex_ratio"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    symbol: str = Field(index=True)
    as_of: date = Field(index=True)
    granularity: str = Field(default="daily", index=True)  # daily|weekly

    offex_pct: Optional[float] = None
    offex_shares: Optional[float] = None
    on_ex_shares: Optional[float] = None
    quality_flag: Optional[str] = None

    __table_args__ = (UniqueConstraint("symbol", "as_of", "granularity", name="uq_offex_symbol_asof_granularity"),)


class ShortInterestPoint(SQLModel, table=True):
    __tablename__ = "micro_short_interest_points"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    symbol: str = Field(index=True)
    settlement_date: date = Field(index=True)
    short_interest: float = 0.0

    __table_args__ = (UniqueConstraint("symbol", "settlement_date", name="uq_short_point_symbol_settlement"),)


class MicrostructureSignal(SQLModel, table=True):
    """
    Daily microstructure features produced upstream (VPIN, Kyle's lambda, order imbalance, ...).
    """

    __tablename__ = "micro_signals"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    symbol: str = Field(index=True)
    as_of: date = Field(index=True)

    vpin: Optional[float] = None
    vpin_spike: bool = False
    kyle_lambda: Optional[float] = None  # bps per $1M
    order_imbalance: Optional[float] = None  # -1..1, negative = sell pressure
    block_ratio: Optional[float] = None  # 0..1
    flow_attribution_score: Optional[float] = None  # 0..1
    confidence: float = 0.0  # 0..1

    __table_args__ = (UniqueConstraint("symbol", "as_of", name="uq_micro_signal_symbol_asof"),)


class RotationEvent(SQLModel, table=True):
    """
    One scored dump anchor. The cluster_id is generated at detection time and is the upsert key.
    """

    __tablename__ = "rotation_events"

    cluster_id: str = Field(primary_key=True)
    issuer_cik: str = Field(index=True)
    anchor_date: Optional[date] = Field(default=None, index=True)
    anchor_filing: Optional[str] = None
    seller: Optional[str] = Field(default=None, index=True)
    source: Optional[str] = Field(default=None, index=True)  # 13f|bo

    delta: Optional[float] = None
    abs_shares: Optional[float] = None
    dumpz: Optional[float] = None
    u_same: Optional[float] = None
    u_next: Optional[float] = None
    uhf_same: Optional[float] = None
    uhf_next: Optional[float] = None
    opt_same: Optional[float] = None
    opt_next: Optional[float] = None
    shortrelief_v2: Optional[float] = None
    index_penalty: Optional[float] = None
    eow: bool = False
    r_score: Optional[float] = Field(default=None, index=True)
    gated: bool = Field(default=False, index=True)

    car_m5_p20: Optional[float] = None
    t_to_plus20_days: Optional[int] = None
    max_ret_w13: Optional[float] = None

    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow, index=True)

    __table_args__ = (Index("ix_rotation_event_issuer_anchor", "issuer_cik", "anchor_date"),)


class RotationEventProvenance(SQLModel, table=True):
    __tablename__ = "rotation_event_provenance"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    cluster_id: str = Field(foreign_key="rotation_events.cluster_id", index=True)
    accession: str = Field(index=True)  # real accession, or INDEX:<name>:<phase> pseudo-accession
    role: str = Field(index=True)  # seller|buyer|anchor|context
    entity_id: Optional[str] = Field(default=None, index=True)
    contribution_weight: Optional[float] = None

    __table_args__ = (UniqueConstraint("cluster_id", "accession", "role", name="uq_provenance_cluster_accession_role"),)


class EventStudyResultRow(SQLModel, table=True):
    __tablename__ = "micro_event_study_results"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    symbol: str = Field(index=True)
    event_type: str = Field(default="Rotation", index=True)
    anchor_date: date = Field(index=True)
    cik: str = Field(default="", index=True)

    car_m5_p20: float = 0.0
    tt_plus20_days: int = 0
    max_ret_w13: float = 0.0
    max_drawdown_w13: float = 0.0
    plus_1w: float = 0.0
    plus_2w: float = 0.0
    plus_4w: float = 0.0
    plus_8w: float = 0.0
    plus_13w: float = 0.0

    offex_covariates: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    short_interest_covariate: Optional[float] = None
    iex_share: Optional[float] = None

    updated_at: datetime = Field(default_factory=utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("symbol", "event_type", "anchor_date", "cik", name="uq_event_study_natural_key"),
    )
