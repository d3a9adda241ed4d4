from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from rotation.settings import settings

MAPPING_URL = "https://api.openfigi.com/v3/mapping"
MAX_JOBS_PER_REQUEST = 10  # unauthenticated limit; keyed clients may send 100


class OpenFigiError(RuntimeError):
    pass


@dataclass(frozen=True)
class FigiMapping:
    cusip: str
    ticker: Optional[str]
    name: Optional[str]
    security_type: Optional[str]
    exch_code: Optional[str]


@dataclass
class OpenFigiClient:
    api_key: str = ""
    rps: float = 2.0
    timeout_s: float = 30.0
    transport: Optional[httpx.BaseTransport] = None
    _last_request_at: float = 0.0

    def _sleep_for_rate_limit(self) -> None:
        if self.rps <= 0:
            return
        min_interval = 1.0 / self.rps
        elapsed = time.monotonic() - self._last_request_at
        if elapsed < min_interval:
            time.sleep(min_interval - elapsed)

    def _post(self, payload: list[dict[str, str]]) -> list[dict[str, Any]]:
        self._sleep_for_rate_limit()
        self._last_request_at = time.monotonic()

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-OPENFIGI-APIKEY"] = self.api_key

        try:
            with httpx.Client(timeout=self.timeout_s, headers=headers, transport=self.transport) as client:
                resp = client.post(MAPPING_URL, json=payload)
        except httpx.HTTPError as e:
            raise OpenFigiError(f"OpenFIGI request failed: {e}") from e

        if resp.status_code >= 400:
            raise OpenFigiError(f"OpenFIGI request failed: {resp.status_code} {resp.reason_phrase}")

        data = resp.json()
        if not isinstance(data, list):
            raise OpenFigiError("OpenFIGI response is not a list")
        return data

    def map_cusips(self, cusips: list[str]) -> list[FigiMapping]:
        """
        Resolve CUSIPs to their best equity listing. CUSIPs OpenFIGI cannot map are omitted.
        """

        out: list[FigiMapping] = []
        batch = MAX_JOBS_PER_REQUEST if not self.api_key else 100
        for i in range(0, len(cusips), batch):
            chunk = cusips[i : i + batch]
            items = self._post([{"idType": "ID_CUSIP", "idValue": c} for c in chunk])
            for cusip, item in zip(chunk, items):
                best = pick_best_equity_mapping(item) if isinstance(item, dict) else None
                if best is None:
                    continue
                out.append(
                    FigiMapping(
                        cusip=cusip.upper(),
                        ticker=(best.get("ticker") or None),
                        name=best.get("name"),
                        security_type=best.get("securityType"),
                        exch_code=best.get("exchCode"),
                    )
                )
        return out

    def map_ticker(self, ticker: str, exch_code: str = "US") -> list[dict[str, Any]]:
        items = self._post([{"idType": "TICKER", "idValue": ticker.upper(), "exchCode": exch_code}])
        if not items or not isinstance(items[0], dict):
            return []
        data = items[0].get("data")
        return data if isinstance(data, list) else []


def default_openfigi_client() -> OpenFigiClient:
    return OpenFigiClient(api_key=settings.openfigi_api_key, rps=settings.openfigi_rps)


def pick_best_equity_mapping(item: dict[str, Any]) -> Optional[dict[str, Any]]:
    """
    Pick the most equity-like listing from one OpenFIGI mapping item.
    """

    results = item.get("data")
    if not isinstance(results, list) or not results:
        return None

    def score(r: dict[str, Any]) -> int:
        st = (r.get("securityType") or "").upper()
        st2 = (r.get("securityType2") or "").upper()
        s = 0
        if st == "COMMON STOCK":
            s += 50
        if st2 in {"EQUITY", "COMMON STOCK"}:
            s += 20
        if (r.get("exchCode") or "").upper() == "US":
            s += 15
        elif r.get("exchCode"):
            s += 5
        if r.get("ticker"):
            s += 10
        return s

    return sorted(results, key=score, reverse=True)[0]
