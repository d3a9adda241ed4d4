from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from rotation.detector import DetectionParams, DumpEvent, DumpEventDetector
from rotation.dump_context import DumpContextBuilder, DumpContextCache
from rotation.event_study import EventStudyResult, compute_event_study, persist_event_study
from rotation.index_penalty import index_penalty, provenance_rows
from rotation.models import RotationEvent, RotationEventProvenance, utcnow
from rotation.quarters import QuarterBounds
from rotation.scoring import MicrostructureInputs, ScoreInputs, ScoringConfig, compute_rotation_score
from rotation.settings import settings
from rotation.signals import OptionsSignal, UhfSignal, UptakeSignal, options_overlay, short_relief, uhf, uptake_from_filings
from rotation.store import RotationDataSource
from rotation.trading_calendar import is_quarter_end_eow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineParams:
    detection: DetectionParams = field(default_factory=DetectionParams.from_settings)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    eow_trading_days: int = 5
    uhf_baseline_days: int = 31
    high_confidence_r_score: float = 0.7

    @classmethod
    def from_settings(cls) -> "PipelineParams":
        return cls(
            detection=DetectionParams.from_settings(),
            scoring=ScoringConfig(
                dump_gate_z=settings.dump_gate_z,
                extension_min_confidence=settings.extension_min_confidence,
            ),
            eow_trading_days=settings.eow_trading_days,
            uhf_baseline_days=settings.uhf_baseline_days,
            high_confidence_r_score=settings.high_confidence_r_score,
        )


@dataclass(frozen=True)
class QuarterSignals:
    uptake: UptakeSignal
    uhf: UhfSignal
    options: OptionsSignal
    short_relief: float

    def as_dict(self) -> dict:
        return {
            "u_same": self.uptake.u_same,
            "u_next": self.uptake.u_next,
            "uhf_same": self.uhf.uhf_same,
            "uhf_next": self.uhf.uhf_next,
            "opt_same": self.options.opt_same,
            "opt_next": self.options.opt_next,
            "short_relief": self.short_relief,
        }


@dataclass
class RotationDetectResult:
    issuer: str
    ticker: Optional[str]
    quarter: QuarterBounds
    status: str  # success|partial_success
    message: str
    events: list[RotationEvent]
    signals: QuarterSignals
    high_confidence_count: int = 0
    warnings: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def cluster_ids(self) -> list[str]:
        return [e.cluster_id for e in self.events]


def derive_quarter_signals(
    *,
    builder: DumpContextBuilder,
    source: RotationDataSource,
    issuer: str,
    quarter: QuarterBounds,
    uhf_baseline_days: int = 31,
) -> QuarterSignals:
    return QuarterSignals(
        uptake=uptake_from_filings(builder, issuer, quarter),
        uhf=uhf(builder, source, issuer, quarter, baseline_days=uhf_baseline_days),
        options=options_overlay(builder, issuer, quarter),
        short_relief=short_relief(builder, source, issuer, quarter),
    )


def _micro_inputs(source: RotationDataSource, ticker: Optional[str], quarter: QuarterBounds) -> Optional[MicrostructureInputs]:
    if not ticker:
        return None
    snap = source.get_microstructure_signals(ticker, quarter.start, quarter.end)
    if snap is None:
        return None
    return MicrostructureInputs(
        vpin_avg=snap.vpin_avg,
        vpin_spike=snap.vpin_spike,
        lambda_avg=snap.lambda_avg,
        order_imbalance_avg=snap.order_imbalance_avg,
        block_ratio_avg=snap.block_ratio_avg,
        flow_attribution_score=snap.flow_attribution_score,
        confidence=snap.confidence,
    )


@dataclass
class ScoredAnchor:
    record: RotationEvent
    provenance: list[RotationEventProvenance]
    study: EventStudyResult


def score_anchor(
    *,
    source: RotationDataSource,
    issuer: str,
    anchor: DumpEvent,
    signals: QuarterSignals,
    params: PipelineParams,
    micro: Optional[MicrostructureInputs] = None,
) -> tuple[RotationEvent, list[RotationEventProvenance]]:
    """
    Scores one anchor. Reads index windows only; nothing is written.
    """

    eow = is_quarter_end_eow(anchor.anchor_date, params.eow_trading_days)
    penalty = index_penalty(source, anchor.anchor_date)

    inputs = ScoreInputs(
        dump_z=anchor.dump_z,
        u_same=signals.uptake.u_same,
        u_next=signals.uptake.u_next,
        uhf_same=signals.uhf.uhf_same,
        uhf_next=signals.uhf.uhf_next,
        opt_same=signals.options.opt_same,
        opt_next=signals.options.opt_next,
        short_relief=signals.short_relief,
        index_penalty=penalty.penalty,
        eow=eow,
        micro=micro,
    )
    result = compute_rotation_score(inputs, params.scoring)

    record = RotationEvent(
        cluster_id=anchor.cluster_id,
        issuer_cik=issuer,
        anchor_date=anchor.anchor_date,
        seller=anchor.seller,
        source=anchor.source,
        delta=anchor.delta,
        abs_shares=anchor.abs_shares,
        dumpz=inputs.dump_z,
        u_same=inputs.u_same,
        u_next=inputs.u_next,
        uhf_same=inputs.uhf_same,
        uhf_next=inputs.uhf_next,
        opt_same=inputs.opt_same,
        opt_next=inputs.opt_next,
        shortrelief_v2=inputs.short_relief,
        index_penalty=inputs.index_penalty,
        eow=eow,
        r_score=result.r_score,
        gated=result.gated,
    )
    return record, provenance_rows(anchor.cluster_id, penalty)


def run_rotation_detection(
    source: RotationDataSource,
    issuer: str,
    quarter: QuarterBounds,
    *,
    ticker: Optional[str] = None,
    cache: Optional[DumpContextCache] = None,
    params: Optional[PipelineParams] = None,
) -> RotationDetectResult:
    """
    Detect, score and persist rotation events for one issuer-quarter, with an event study
    per anchor. Sequential. Every read happens before the first write, so a failed read
    aborts the run with nothing persisted.
    """

    p = params or PipelineParams.from_settings()
    started = utcnow()
    builder = DumpContextBuilder(source=source, cache=cache if cache is not None else DumpContextCache())
    detector = DumpEventDetector(source=source, builder=builder, params=p.detection)

    anchors = detector.detect(issuer, quarter)
    signals = derive_quarter_signals(
        builder=builder, source=source, issuer=issuer, quarter=quarter, uhf_baseline_days=p.uhf_baseline_days
    )
    micro = _micro_inputs(source, ticker, quarter)

    scored: list[ScoredAnchor] = []
    high_conf = 0
    for anchor in anchors:
        record, provenance = score_anchor(
            source=source, issuer=issuer, anchor=anchor, signals=signals, params=p, micro=micro
        )
        if record.r_score is not None and record.r_score > p.high_confidence_r_score:
            high_conf += 1

        study = compute_event_study(source, anchor.anchor_date, issuer, ticker)
        record.car_m5_p20 = study.car
        record.t_to_plus20_days = study.tt_plus20
        record.max_ret_w13 = study.max_ret
        scored.append(ScoredAnchor(record=record, provenance=provenance, study=study))

    events: list[RotationEvent] = []
    for s in scored:
        events.append(source.upsert_rotation_event(s.record))
        source.upsert_provenance(s.provenance)
        if ticker:
            persist_event_study(source, s.study, symbol=ticker, issuer=issuer)

    warnings: list[str] = []
    label = ticker or issuer
    if anchors:
        status = "success"
        message = f"Detected {len(anchors)} rotation events for {label} in {quarter.label}"
        if high_conf:
            message += f" ({high_conf} high-confidence)"
    else:
        status = "partial_success"
        message = f"No rotation events detected for {label} in {quarter.label}"
        warnings.extend(
            [
                "No dump events detected - this may indicate:",
                "  1. No significant institutional rotation occurred",
                "  2. Missing 13F data for the issuer's holders",
                "  3. No CUSIPs mapped to the issuer (check cusip_issuer_map)",
            ]
        )

    logger.info("%s", message)
    return RotationDetectResult(
        issuer=issuer,
        ticker=ticker,
        quarter=quarter,
        status=status,
        message=message,
        events=events,
        signals=signals,
        high_confidence_count=high_conf,
        warnings=warnings,
        started_at=started,
        completed_at=utcnow(),
    )
