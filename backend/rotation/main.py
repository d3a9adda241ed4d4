from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session, select
from sqlmodel import col

from rotation.db import get_session, init_db
from rotation.log import configure_logging
from rotation.models import EventStudyResultRow, RotationEvent, RotationEventProvenance, SecurityIssuerMap
from rotation.pipeline import run_rotation_detection
from rotation.quarters import InvalidDateError, InvalidQuarterBounds, QuarterBounds
from rotation.security_map import normalize_cik
from rotation.settings import settings
from rotation.store import SqlRotationStore


app = FastAPI(title="Rotation API", version="0.1.0")

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
def _startup() -> None:
    configure_logging(settings.log_level)
    init_db()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def _issuers_for_ticker(session: Session, ticker: str) -> list[str]:
    rows = session.exec(
        select(SecurityIssuerMap.issuer_cik).where(col(SecurityIssuerMap.ticker) == ticker.strip().upper())
    ).all()
    return sorted({str(r) for r in rows if r})


@app.get("/events")
def list_events(
    cik: str = "",
    ticker: str = "",
    gated_only: bool = False,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> dict:
    """
    Stored rotation events for an issuer (by CIK, or by ticker via cusip_issuer_map), newest anchor first.
    """

    if cik.strip():
        issuers = [normalize_cik(cik)]
    elif ticker.strip():
        issuers = _issuers_for_ticker(session, ticker)
    else:
        raise HTTPException(status_code=400, detail="cik or ticker is required")
    if not issuers:
        return {"issuers": [], "events": []}

    stmt = (
        select(RotationEvent)
        .where(col(RotationEvent.issuer_cik).in_(issuers))
        .order_by(col(RotationEvent.anchor_date).desc(), col(RotationEvent.r_score).desc())
    )
    if gated_only:
        stmt = stmt.where(col(RotationEvent.gated) == True)  # noqa: E712
    events = list(session.exec(stmt.limit(min(max(int(limit or 100), 1), 500))).all())

    cluster_ids = [e.cluster_id for e in events]
    provenance = (
        list(session.exec(select(RotationEventProvenance).where(col(RotationEventProvenance.cluster_id).in_(cluster_ids))).all())
        if cluster_ids
        else []
    )
    by_cluster: dict[str, list[dict]] = {}
    for p in provenance:
        by_cluster.setdefault(p.cluster_id, []).append(
            {"accession": p.accession, "role": p.role, "entity_id": p.entity_id, "weight": p.contribution_weight}
        )

    return {
        "issuers": issuers,
        "events": [{**e.model_dump(), "provenance": by_cluster.get(e.cluster_id, [])} for e in events],
    }


@app.get("/event-studies")
def list_event_studies(symbol: str = "", cik: str = "", limit: int = 100, session: Session = Depends(get_session)) -> dict:
    stmt = select(EventStudyResultRow).order_by(col(EventStudyResultRow.anchor_date).desc())
    if symbol.strip():
        stmt = stmt.where(col(EventStudyResultRow.symbol) == symbol.strip().upper())
    if cik.strip():
        stmt = stmt.where(col(EventStudyResultRow.cik) == normalize_cik(cik))
    rows = list(session.exec(stmt.limit(min(max(int(limit or 100), 1), 500))).all())
    return {"rows": rows}


@app.post("/run")
def run_detection(payload: dict, session: Session = Depends(get_session)) -> dict:
    """
    Synchronous rotation detection for one issuer-quarter.
    Body: {"cik": "...", "quarter_start": "YYYY-MM-DD", "quarter_end": "YYYY-MM-DD", "ticker": optional}
    """

    cik = str(payload.get("cik") or "").strip()
    if not cik:
        raise HTTPException(status_code=400, detail="cik is required")
    try:
        quarter = QuarterBounds.parse(payload.get("quarter_start"), payload.get("quarter_end"))
    except (InvalidDateError, InvalidQuarterBounds) as e:
        raise HTTPException(status_code=400, detail=str(e))

    ticker = str(payload.get("ticker") or "").strip().upper() or None
    result = run_rotation_detection(SqlRotationStore(session=session), normalize_cik(cik), quarter, ticker=ticker)
    return {
        "status": result.status,
        "message": result.message,
        "quarter": result.quarter.label,
        "cluster_ids": result.cluster_ids,
        "high_confidence_count": result.high_confidence_count,
        "signals": result.signals.as_dict(),
        "warnings": result.warnings,
    }
