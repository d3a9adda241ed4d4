from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

SCORE_WEIGHTS: dict[str, float] = {
    "dump": 2.0,
    "u_same": 1.0,
    "u_next": 0.85,
    "uhf_same": 0.7,
    "uhf_next": 0.6,
    "opt_same": 0.5,
    "opt_next": 0.4,
    "short_relief": 0.4,
    # Microstructure
    "micro_vpin": 0.6,
    "micro_vpin_spike": 0.8,
    "micro_lambda": 0.3,
    "micro_order_imbalance": 0.4,
    "micro_block_ratio": 0.5,
    "micro_flow_attribution": 0.7,
    # Insider transactions
    "insider_post_dump_buying": 0.8,
    "insider_pre_dump_selling": -0.5,
    "insider_net_flow": 0.6,
    # Options flow
    "options_pre_dump_put_surge": 1.2,
    "options_pre_dump_pc_ratio": 0.8,
    "options_post_dump_call_buildup": 0.7,
    "options_post_dump_iv_decline": 0.5,
    "options_unusual_activity": 0.3,
}

DUMP_GATE_Z = 1.5

# Applied to next-quarter signals when the anchor sits in the last trading days of the quarter.
EOW_MULTIPLIERS: dict[str, float] = {
    "u_next": 0.95,
    "uhf_next": 0.90,
    "opt_next": 0.50,
}

EXTENSION_MIN_CONFIDENCE = 0.5

LAMBDA_CAP_BPS = 50.0
INSIDER_FLOW_CAP = 0.2
INSIDER_NEXT_QUARTER_FACTOR = 0.7
UNUSUAL_ACTIVITY_CAP = 5


@dataclass(frozen=True)
class ScoringConfig:
    weights: dict[str, float] = field(default_factory=lambda: dict(SCORE_WEIGHTS))
    dump_gate_z: float = DUMP_GATE_Z
    eow_multipliers: dict[str, float] = field(default_factory=lambda: dict(EOW_MULTIPLIERS))
    extension_min_confidence: float = EXTENSION_MIN_CONFIDENCE


@dataclass(frozen=True)
class MicrostructureInputs:
    vpin_avg: Optional[float] = None
    vpin_spike: bool = False
    lambda_avg: Optional[float] = None
    order_imbalance_avg: Optional[float] = None
    block_ratio_avg: Optional[float] = None
    flow_attribution_score: Optional[float] = None
    confidence: float = 0.0


@dataclass(frozen=True)
class InsiderInputs:
    post_dump_buying: bool = False
    pre_dump_selling: bool = False
    net_flow_same_quarter: Optional[float] = None  # fraction of dump size, signed
    net_flow_next_quarter: Optional[float] = None
    confidence: float = 0.0


@dataclass(frozen=True)
class OptionsFlowInputs:
    pre_dump_put_surge: bool = False
    pre_dump_pc_ratio: Optional[float] = None
    post_dump_call_buildup: bool = False
    post_dump_iv_decline: bool = False
    unusual_activity_count: Optional[int] = None
    confidence: float = 0.0


@dataclass(frozen=True)
class ScoreInputs:
    dump_z: float
    u_same: float = 0.0
    u_next: float = 0.0
    uhf_same: float = 0.0
    uhf_next: float = 0.0
    opt_same: float = 0.0
    opt_next: float = 0.0
    short_relief: float = 0.0
    index_penalty: float = 0.0
    eow: bool = False
    micro: Optional[MicrostructureInputs] = None
    insider: Optional[InsiderInputs] = None
    options_flow: Optional[OptionsFlowInputs] = None


@dataclass(frozen=True)
class ScoreResult:
    r_score: float
    gated: bool


def compute_microstructure_score(m: MicrostructureInputs, weights: dict[str, float] = SCORE_WEIGHTS) -> float:
    s = 0.0
    if m.vpin_avg is not None:
        s += weights["micro_vpin"] * m.vpin_avg
    if m.vpin_spike:
        s += weights["micro_vpin_spike"]
    if m.lambda_avg is not None:
        s += weights["micro_lambda"] * min(m.lambda_avg / LAMBDA_CAP_BPS, 1.0)
    if m.order_imbalance_avg is not None:
        # Sell-side imbalance counts 20% more than buy-side.
        imbalance = abs(m.order_imbalance_avg)
        if m.order_imbalance_avg < 0:
            imbalance *= 1.2
        s += weights["micro_order_imbalance"] * min(imbalance, 1.0)
    if m.block_ratio_avg is not None:
        s += weights["micro_block_ratio"] * m.block_ratio_avg
    if m.flow_attribution_score is not None:
        s += weights["micro_flow_attribution"] * m.flow_attribution_score
    return s


def compute_insider_score(i: InsiderInputs, weights: dict[str, float] = SCORE_WEIGHTS) -> float:
    s = 0.0
    if i.post_dump_buying:
        s += weights["insider_post_dump_buying"]
    if i.pre_dump_selling:
        s += weights["insider_pre_dump_selling"]
    if i.net_flow_same_quarter is not None and i.net_flow_same_quarter > 0:
        s += weights["insider_net_flow"] * min(i.net_flow_same_quarter / INSIDER_FLOW_CAP, 1.0)
    if i.net_flow_next_quarter is not None and i.net_flow_next_quarter > 0:
        s += (
            weights["insider_net_flow"]
            * min(i.net_flow_next_quarter / INSIDER_FLOW_CAP, 1.0)
            * INSIDER_NEXT_QUARTER_FACTOR
        )
    return s


def compute_options_flow_score(o: OptionsFlowInputs, weights: dict[str, float] = SCORE_WEIGHTS) -> float:
    s = 0.0
    if o.pre_dump_put_surge:
        s += weights["options_pre_dump_put_surge"]
    if o.pre_dump_pc_ratio is not None:
        # P/C of 1.0 is neutral; 2.0 or more saturates.
        normalized = min(o.pre_dump_pc_ratio - 1.0, 1.0)
        if normalized > 0:
            s += weights["options_pre_dump_pc_ratio"] * normalized
    if o.post_dump_call_buildup:
        s += weights["options_post_dump_call_buildup"]
    if o.post_dump_iv_decline:
        s += weights["options_post_dump_iv_decline"]
    if o.unusual_activity_count is not None:
        s += weights["options_unusual_activity"] * min(o.unusual_activity_count, UNUSUAL_ACTIVITY_CAP)
    return s


def compute_rotation_score(inputs: ScoreInputs, config: Optional[ScoringConfig] = None) -> ScoreResult:
    """
    Gated weighted severity score.

    A dump only scores as rotation when it is anomalous (dump_z >= gate) AND someone was
    observed absorbing shares (any uptake or UHF signal > 0). Otherwise (0.0, False).
    """

    cfg = config or ScoringConfig()
    w = cfg.weights

    absorbed = inputs.u_same > 0 or inputs.u_next > 0 or inputs.uhf_same > 0 or inputs.uhf_next > 0
    if not (inputs.dump_z >= cfg.dump_gate_z and absorbed):
        return ScoreResult(r_score=0.0, gated=False)

    m_u_next = cfg.eow_multipliers["u_next"] if inputs.eow else 1.0
    m_uhf_next = cfg.eow_multipliers["uhf_next"] if inputs.eow else 1.0
    m_opt_next = cfg.eow_multipliers["opt_next"] if inputs.eow else 1.0

    score = (
        w["dump"] * inputs.dump_z
        + w["u_same"] * inputs.u_same
        + w["u_next"] * inputs.u_next * m_u_next
        + w["uhf_same"] * inputs.uhf_same
        + w["uhf_next"] * inputs.uhf_next * m_uhf_next
        + w["opt_same"] * inputs.opt_same
        + w["opt_next"] * inputs.opt_next * m_opt_next
        + w["short_relief"] * inputs.short_relief
        - inputs.index_penalty
    )

    # Low-confidence extension reads must not move the primary score.
    min_conf = cfg.extension_min_confidence
    if inputs.micro is not None and inputs.micro.confidence > min_conf:
        score += compute_microstructure_score(inputs.micro, w) * inputs.micro.confidence
    if inputs.insider is not None and inputs.insider.confidence > min_conf:
        score += compute_insider_score(inputs.insider, w) * inputs.insider.confidence
    if inputs.options_flow is not None and inputs.options_flow.confidence > min_conf:
        score += compute_options_flow_score(inputs.options_flow, w) * inputs.options_flow.confidence

    return ScoreResult(r_score=score, gated=True)
