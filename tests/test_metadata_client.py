"""
test_metadata_client.py — Stage and entry-list fetching against a mocked
PostgREST endpoint.
"""

import asyncio

import httpx
import pytest

from rallycore.metadata_client import fetch_competitors, fetch_stages
from rallycore.models import StageStatus

BASE_URL = "https://meta.example.org"


def _transport(payload, seen=None, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=payload)
    return httpx.MockTransport(handler)


def test_fetch_stages_orders_and_normalises():
    seen = []
    rows = [
        {"id": "ss2", "name": "Sweet Lamb", "distance": "12.5", "status": "upcoming",
         "date": "2024-11-16", "start_time": "09:00"},
        {"id": "ss1", "name": "Hafren", "distance": 20.1, "status": "completed",
         "date": "2024-11-15", "start_time": "14:30"},
        {"id": "ss3", "name": "Dyfi", "distance": 30, "status": "ongoing",
         "date": "2024-11-16", "start_time": "13:10"},
        {"id": "", "name": "No id"},
        {"id": "ss9", "name": "Bad status", "status": "postponed", "date": "2024-11-17"},
    ]
    stages = asyncio.run(fetch_stages("rgb", BASE_URL, "secret", _transport(rows, seen)))

    assert [(s.stage_id, s.ordinal) for s in stages] == [("ss1", 1), ("ss2", 2), ("ss3", 3)]
    assert stages[0].status is StageStatus.COMPLETED
    assert stages[1].distance_km == 12.5
    assert stages[2].status is StageStatus.IN_PROGRESS
    assert all(s.rally_id == "rgb" for s in stages)

    request = seen[0]
    assert request.url.path == "/rest/v1/stages"
    assert request.url.params["rally_id"] == "eq.rgb"
    assert request.headers["apikey"] == "secret"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["User-Agent"] == "RallyTiming/1.0"


def test_fetch_stages_uses_explicit_ordinal():
    rows = [
        {"id": "ss1", "name": "Hafren", "ordinal": 2, "date": "2024-11-15"},
        {"id": "ss0", "name": "Shakedown", "ordinal": 1, "date": "2024-11-16"},
    ]
    stages = asyncio.run(fetch_stages("rgb", BASE_URL, "", _transport(rows)))
    assert {s.stage_id: s.ordinal for s in stages} == {"ss1": 2, "ss0": 1}


def test_fetch_competitors():
    seen = []
    rows = [
        {"number": 5, "driver_id": "d-5", "driver": {"name": "Colin McRae", "nationality": "GBR"},
         "co_driver": {"name": "Nicky Grist"}, "team": {"name": "Subaru"},
         "car": {"make": "Subaru", "model": "Impreza WRC"}},
        {"number": "6", "driver_id": "d-6", "driver_name": "Richard Burns", "team": "Mitsubishi"},
        {"number": None, "driver_id": "d-7", "driver": {"name": "No Number"}},
        {"number": 8, "driver_id": "", "driver": {"name": "No Id"}},
    ]
    competitors = asyncio.run(fetch_competitors("rgb", BASE_URL, "", _transport(rows, seen)))

    assert [c.competitor_id for c in competitors] == ["d-5", "d-6"]
    mcrae, burns = competitors
    assert (mcrae.name, mcrae.car_number, mcrae.nationality) == ("Colin McRae", 5, "GBR")
    assert (mcrae.co_driver, mcrae.team, mcrae.car) == ("Nicky Grist", "Subaru", "Subaru Impreza WRC")
    assert (burns.name, burns.car_number, burns.team) == ("Richard Burns", 6, "Mitsubishi")
    assert "apikey" not in seen[0].headers
    assert seen[0].url.path == "/rest/v1/entries"


def test_http_error_propagates():
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(fetch_stages("rgb", BASE_URL, "", _transport({"message": "denied"},
                                                                 status_code=401)))
