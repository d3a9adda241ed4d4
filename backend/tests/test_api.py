from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from rotation.db import get_session
from rotation.main import app
from rotation.models import EventStudyResultRow, Position13F, SecurityIssuerMap


@pytest.fixture()
def client(engine):
    def _session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _session_override
    # no context manager: startup would initialise the configured database
    yield TestClient(app)
    app.dependency_overrides.clear()


def _seed(engine) -> None:
    with Session(engine) as session:
        session.add(SecurityIssuerMap(cusip="037833100", issuer_cik="0000320193", ticker="AAPL"))
        session.add(Position13F(entity_id="seller", cusip="037833100", asof=date(2023, 12, 31), shares=1000, accession="a1"))
        session.add(Position13F(entity_id="seller", cusip="037833100", asof=date(2024, 3, 31), shares=500, accession="a2"))
        session.add(Position13F(entity_id="buyer", cusip="037833100", asof=date(2023, 12, 31), shares=100, accession="b1"))
        session.add(Position13F(entity_id="buyer", cusip="037833100", asof=date(2024, 3, 31), shares=300, accession="b2"))
        session.commit()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_run_then_list_events_by_cik_and_ticker(client, engine):
    _seed(engine)

    resp = client.post("/run", json={"cik": "320193", "quarter_start": "2024-01-01", "quarter_end": "2024-03-31"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["quarter"] == "2024Q1"
    assert len(body["cluster_ids"]) == 1
    assert body["signals"]["u_same"] == pytest.approx(0.4)

    by_cik = client.get("/events", params={"cik": "320193"}).json()
    assert [e["cluster_id"] for e in by_cik["events"]] == body["cluster_ids"]
    assert by_cik["events"][0]["gated"] is True
    assert by_cik["events"][0]["provenance"] == []

    by_ticker = client.get("/events", params={"ticker": "aapl", "gated_only": True}).json()
    assert by_ticker["issuers"] == ["0000320193"]
    assert len(by_ticker["events"]) == 1


def test_run_rejects_invalid_input(client):
    assert client.post("/run", json={"quarter_start": "2024-01-01", "quarter_end": "2024-03-31"}).status_code == 400
    assert client.post("/run", json={"cik": "320193", "quarter_start": "2024-03-31", "quarter_end": "2024-01-01"}).status_code == 400
    assert client.post("/run", json={"cik": "320193", "quarter_start": "bad", "quarter_end": "2024-03-31"}).status_code == 400


def test_events_requires_cik_or_ticker(client):
    assert client.get("/events").status_code == 400
    assert client.get("/events", params={"ticker": "NOPE"}).json() == {"issuers": [], "events": []}


def test_event_studies_filter(client, engine):
    with Session(engine) as session:
        session.add(EventStudyResultRow(symbol="AAPL", anchor_date=date(2024, 3, 31), cik="0000320193", car_m5_p20=0.1))
        session.add(EventStudyResultRow(symbol="MSFT", anchor_date=date(2024, 3, 31), cik="0000789019", car_m5_p20=0.2))
        session.commit()

    rows = client.get("/event-studies", params={"symbol": "aapl"}).json()["rows"]
    assert len(rows) == 1
    assert rows[0]["car_m5_p20"] == pytest.approx(0.1)
