from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SecurityMapRow:
    cusip: str
    issuer_cik: str
    ticker: Optional[str] = None
    name: Optional[str] = None


def normalize_cik(value: str) -> str:
    s = str(value or "").strip()
    if s.isdigit():
        return s.zfill(10)
    return s


def parse_security_map_csv(text: str) -> list[SecurityMapRow]:
    """
    Parse a CSV with header containing at least: cusip,issuer_cik
    Optional columns: ticker,name

    Notes:
    - Minimal parser (comma-splitting; no quoted-field support).
    - Numeric CIKs are zero-padded to 10 digits.
    """

    lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
    if not lines:
        return []

    header = [h.strip().lower() for h in lines[0].split(",")]
    if "cusip" not in header or "issuer_cik" not in header:
        raise ValueError("CSV must have header with at least cusip,issuer_cik")

    idx_cusip = header.index("cusip")
    idx_cik = header.index("issuer_cik")
    idx_ticker = header.index("ticker") if "ticker" in header else -1
    idx_name = header.index("name") if "name" in header else -1

    rows: list[SecurityMapRow] = []
    for ln in lines[1:]:
        parts = [p.strip() for p in ln.split(",")]
        if len(parts) <= max(idx_cusip, idx_cik, idx_ticker, idx_name):
            continue
        cusip = parts[idx_cusip].upper()
        cik = normalize_cik(parts[idx_cik])
        if not cusip or not cik:
            continue
        ticker = parts[idx_ticker].upper() if idx_ticker >= 0 and parts[idx_ticker] else None
        name = parts[idx_name] if idx_name >= 0 and parts[idx_name] else None
        rows.append(SecurityMapRow(cusip=cusip, issuer_cik=cik, ticker=ticker, name=name))

    return rows
