from __future__ import annotations

from pathlib import Path

import typer
from sqlmodel import Session, select
from sqlmodel import col

from rotation.connectors.openfigi import default_openfigi_client
from rotation.db import engine, init_db
from rotation.event_study import event_study
from rotation.log import configure_logging
from rotation.models import SecurityIssuerMap
from rotation.pipeline import run_rotation_detection
from rotation.quarters import InvalidDateError, InvalidQuarterBounds, QuarterBounds, parse_iso_date
from rotation.resolution import (
    OpenFigiResolver,
    StoredMappingResolver,
    TickerFallbackResolver,
    resolve_cusips,
    store_resolution,
)
from rotation.scoring import ScoreInputs, compute_rotation_score
from rotation.security_map import normalize_cik, parse_security_map_csv
from rotation.settings import settings
from rotation.store import SqlRotationStore


app = typer.Typer(add_completion=False)


@app.callback()
def _ensure_db_initialized() -> None:
    # Silent so command output stays script-friendly; logs go to stderr.
    configure_logging(settings.log_level)
    init_db()


def _quarter(start: str, end: str) -> QuarterBounds:
    try:
        return QuarterBounds.parse(start, end)
    except (InvalidDateError, InvalidQuarterBounds) as e:
        raise typer.BadParameter(str(e))


@app.command("init-db")
def init_db_cmd() -> None:
    init_db()
    typer.echo("DB initialized.")


@app.command("import-security-map")
def import_security_map(
    path: Path = typer.Argument(..., help="CSV with columns: cusip,issuer_cik[,ticker][,name]"),
    upsert: bool = typer.Option(True, help="Update ticker/name on existing cusip+issuer rows"),
) -> None:
    """
    Import a CUSIP -> issuer CIK mapping. Rotation detection only sees CUSIPs mapped here.
    """

    if not path.exists():
        raise typer.BadParameter(f"file not found: {path}")

    try:
        rows = parse_security_map_csv(path.read_text())
    except ValueError as e:
        raise typer.BadParameter(str(e))
    if not rows:
        raise typer.Exit(code=2)

    inserted = 0
    updated = 0

    with Session(engine) as session:
        for r in rows:
            existing = session.exec(
                select(SecurityIssuerMap)
                .where(col(SecurityIssuerMap.cusip) == r.cusip)
                .where(col(SecurityIssuerMap.issuer_cik) == r.issuer_cik)
            ).first()

            if existing is None:
                session.add(SecurityIssuerMap(cusip=r.cusip, issuer_cik=r.issuer_cik, ticker=r.ticker, name=r.name, source="csv"))
                inserted += 1
            else:
                if not upsert:
                    continue
                changed = False
                if r.ticker and existing.ticker != r.ticker:
                    existing.ticker = r.ticker
                    changed = True
                if r.name and existing.name != r.name:
                    existing.name = r.name
                    changed = True
                if changed:
                    session.add(existing)
                    updated += 1

        session.commit()

    typer.echo(f"Imported security map: inserted={inserted} updated={updated}")


@app.command("detect-rotation")
def detect_rotation(
    cik: str = typer.Option(..., help="Issuer CIK"),
    quarter_start: str = typer.Option(..., help="Quarter start (YYYY-MM-DD)"),
    quarter_end: str = typer.Option(..., help="Quarter end (YYYY-MM-DD)"),
    ticker: str = typer.Option("", help="Optional ticker (enables covariates and microstructure inputs)"),
    resolve_openfigi: bool = typer.Option(False, help="Query OpenFIGI when the issuer has no mapped CUSIPs"),
) -> None:
    """
    Detect, score and persist rotation events for one issuer-quarter.
    """

    quarter = _quarter(quarter_start, quarter_end)
    issuer = normalize_cik(cik)
    symbol = ticker.strip().upper() or None

    with Session(engine) as session:
        store = SqlRotationStore(session=session)
        if not store.list_security_identifiers(issuer) and symbol:
            resolvers = [StoredMappingResolver(session=session)]
            if resolve_openfigi:
                resolvers.append(OpenFigiResolver(client=default_openfigi_client()))
            resolvers.append(TickerFallbackResolver())
            resolution = resolve_cusips(symbol, issuer, resolvers)
            if resolution is not None:
                stored = store_resolution(session, issuer_cik=issuer, ticker=symbol, result=resolution)
                typer.echo(
                    f"Resolved {symbol}: cusips={','.join(resolution.cusips)} "
                    f"source={resolution.source} confidence={resolution.confidence} stored={stored}"
                )

        result = run_rotation_detection(store, issuer, quarter, ticker=symbol)

    typer.echo(result.message)
    for w in result.warnings:
        typer.echo(w)
    for e in result.events:
        typer.echo(
            f"{e.cluster_id}  anchor={e.anchor_date}  seller={e.seller}  source={e.source}  "
            f"dumpz={(e.dumpz or 0.0):.2f}  r_score={(e.r_score or 0.0):.3f}  gated={e.gated}  eow={e.eow}"
        )


@app.command("event-study")
def event_study_cmd(
    cik: str = typer.Option(..., help="Issuer CIK"),
    anchor_date: str = typer.Option(..., help="Anchor date (YYYY-MM-DD)"),
    ticker: str = typer.Option("", help="Optional ticker; when set the result is persisted with covariates"),
) -> None:
    try:
        anchor = parse_iso_date(anchor_date)
    except InvalidDateError as e:
        raise typer.BadParameter(str(e))

    with Session(engine) as session:
        result = event_study(SqlRotationStore(session=session), anchor, normalize_cik(cik), ticker.strip() or None)

    typer.echo(
        f"anchor={result.anchor_date} car={result.car:.4f} tt_plus20={result.tt_plus20} "
        f"max_ret={result.max_ret:.4f} max_drawdown={result.max_drawdown:.4f}"
    )
    for h, v in result.horizons().items():
        typer.echo(f"+{h}: {v:.4f}")


@app.command("score")
def score_cmd(
    dump_z: float = typer.Option(..., help="Holder anomaly score of the dump"),
    u_same: float = typer.Option(0.0),
    u_next: float = typer.Option(0.0),
    uhf_same: float = typer.Option(0.0),
    uhf_next: float = typer.Option(0.0),
    opt_same: float = typer.Option(0.0),
    opt_next: float = typer.Option(0.0),
    short_relief: float = typer.Option(0.0),
    index_penalty: float = typer.Option(0.0),
    eow: bool = typer.Option(False, help="Anchor falls in the last trading days of the quarter"),
) -> None:
    """
    Score a set of signal values without touching the database.
    """

    result = compute_rotation_score(
        ScoreInputs(
            dump_z=dump_z,
            u_same=u_same,
            u_next=u_next,
            uhf_same=uhf_same,
            uhf_next=uhf_next,
            opt_same=opt_same,
            opt_next=opt_next,
            short_relief=short_relief,
            index_penalty=index_penalty,
            eow=eow,
        )
    )
    typer.echo(f"r_score={result.r_score:.4f} gated={result.gated}")


if __name__ == "__main__":
    app()
