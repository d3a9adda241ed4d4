from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from sqlmodel import Session, select

from rotation.connectors.openfigi import OpenFigiClient, OpenFigiError
from rotation.models import SecurityIssuerMap
from rotation.security_map import normalize_cik

logger = logging.getLogger(__name__)

CUSIP_RE = re.compile(r"^[0-9A-Z]{9}$")


@dataclass(frozen=True)
class ResolutionResult:
    cusips: tuple[str, ...]
    source: str  # stored|csv|openfigi|ticker_fallback
    confidence: str  # high|medium|low

    @property
    def valid_cusips(self) -> tuple[str, ...]:
        return tuple(c for c in self.cusips if is_valid_cusip(c))


def is_valid_cusip(value: str) -> bool:
    return bool(CUSIP_RE.match(value or ""))


class CusipResolver(Protocol):
    def resolve(self, ticker: str, issuer_cik: str) -> Optional[ResolutionResult]: ...


@dataclass
class StoredMappingResolver:
    session: Session

    def resolve(self, ticker: str, issuer_cik: str) -> Optional[ResolutionResult]:
        cik = normalize_cik(issuer_cik)
        rows = self.session.exec(select(SecurityIssuerMap).where(SecurityIssuerMap.issuer_cik == cik)).all()
        if not rows and ticker:
            rows = self.session.exec(
                select(SecurityIssuerMap).where(SecurityIssuerMap.ticker == ticker.upper())
            ).all()
        cusips = sorted({r.cusip.upper() for r in rows if r.cusip})
        if not cusips:
            return None
        return ResolutionResult(cusips=tuple(cusips), source="stored", confidence="high")


@dataclass
class OpenFigiResolver:
    client: OpenFigiClient
    exch_code: str = "US"

    def resolve(self, ticker: str, issuer_cik: str) -> Optional[ResolutionResult]:
        if not ticker:
            return None
        try:
            listings = self.client.map_ticker(ticker, exch_code=self.exch_code)
        except OpenFigiError as e:
            logger.warning("OpenFIGI lookup failed for %s: %s", ticker, e)
            return None

        with_cusip = [r for r in listings if isinstance(r.get("metadata"), dict) and r["metadata"].get("cusip")]
        if not with_cusip:
            return None
        common = [r for r in with_cusip if (r.get("securityType") or "").upper() == "COMMON STOCK"]
        best = (common or with_cusip)[0]
        cusip = str(best["metadata"]["cusip"]).upper()
        return ResolutionResult(cusips=(cusip,), source="openfigi", confidence="high" if common else "medium")


@dataclass
class TickerFallbackResolver:
    """
    Last resort: the ticker itself stands in for the identifier.
    Never a valid CUSIP, so downstream holdings lookups will usually come back empty.
    """

    def resolve(self, ticker: str, issuer_cik: str) -> Optional[ResolutionResult]:
        if not ticker:
            return None
        logger.warning("falling back to ticker %s as identifier for issuer %s", ticker.upper(), issuer_cik)
        return ResolutionResult(cusips=(ticker.upper(),), source="ticker_fallback", confidence="low")


def resolve_cusips(ticker: str, issuer_cik: str, resolvers: Sequence[CusipResolver]) -> Optional[ResolutionResult]:
    """
    Try each resolver in order; the first non-empty result wins.
    """

    for resolver in resolvers:
        result = resolver.resolve(ticker, issuer_cik)
        if result is not None and result.cusips:
            logger.info(
                "resolved %s -> %s (source=%s, confidence=%s)",
                ticker or issuer_cik,
                ",".join(result.cusips),
                result.source,
                result.confidence,
            )
            return result
    return None


def store_resolution(session: Session, *, issuer_cik: str, ticker: Optional[str], result: ResolutionResult) -> int:
    """
    Persist valid CUSIPs from a resolution into cusip_issuer_map. Already-stored pairs are skipped.
    """

    if result.source == "stored":
        return 0
    cik = normalize_cik(issuer_cik)
    inserted = 0
    for cusip in result.valid_cusips:
        exists = session.exec(
            select(SecurityIssuerMap)
            .where(SecurityIssuerMap.cusip == cusip)
            .where(SecurityIssuerMap.issuer_cik == cik)
        ).first()
        if exists is not None:
            continue
        session.add(
            SecurityIssuerMap(
                cusip=cusip,
                issuer_cik=cik,
                ticker=ticker.upper() if ticker else None,
                source=result.source,
            )
        )
        inserted += 1
    session.commit()
    return inserted
