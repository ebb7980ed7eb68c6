"""
metadata_client.py — Rally metadata store client.

Fetches stage definitions and entry lists from the hosted metadata store
(PostgREST API). The engine never invents stages; this is where they come
from.

Base URL and API key come from METADATA_BASE_URL / METADATA_API_KEY.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import httpx

from rallycore.errors import UnknownStatus
from rallycore.models import Competitor, Stage, normalize_stage_status

logger = logging.getLogger("rallytiming.metadata")

DEFAULT_BASE_URL = os.environ.get("METADATA_BASE_URL", "http://localhost:54321")
DEFAULT_API_KEY = os.environ.get("METADATA_API_KEY", "")

ENTRY_SELECT = ("*,driver:drivers!driver_id(name,nationality),"
                "co_driver:drivers!co_driver_id(name),team:teams(name),car:cars(make,model)")


def _client(base_url: Optional[str], api_key: Optional[str],
            transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
    key = DEFAULT_API_KEY if api_key is None else api_key
    headers = {"User-Agent": "RallyTiming/1.0", "Accept": "application/json"}
    if key:
        headers["apikey"] = key
        headers["Authorization"] = f"Bearer {key}"
    return httpx.AsyncClient(
        base_url=(base_url or DEFAULT_BASE_URL).rstrip("/"),
        timeout=15.0,
        headers=headers,
        transport=transport,
    )


def _name(value) -> str:
    if isinstance(value, dict):
        return str(value.get("name") or "").strip()
    return str(value or "").strip()


async def fetch_stages(rally_id: str, base_url: Optional[str] = None,
                       api_key: Optional[str] = None,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> list[Stage]:
    """Fetch the stage list of a rally, in running order.

    Expected row format:
        {"id": "ss1", "name": "Col de Turini", "distance": 14.2,
         "status": "completed", "date": "2024-01-20", "start_time": "08:15",
         "ordinal": 1}

    ``ordinal`` is optional; without it stages are numbered in date and
    start-time order.
    """
    params = {"rally_id": f"eq.{rally_id}", "select": "*",
              "order": "date.asc,start_time.asc"}
    logger.info("Fetching stages for rally %s", rally_id)

    async with _client(base_url, api_key, transport) as client:
        resp = await client.get("/rest/v1/stages", params=params)
        resp.raise_for_status()
        data = resp.json()

    rows = sorted(data, key=lambda r: (str(r.get("date") or ""), str(r.get("start_time") or "")))
    stages = []
    for item in rows:
        stage_id = str(item.get("id") or "").strip()
        if not stage_id:
            logger.warning("Skipping stage without id: %s", item)
            continue
        try:
            status = normalize_stage_status(item.get("status"))
        except UnknownStatus as e:
            logger.warning("Skipping stage %s: %s", stage_id, e)
            continue
        try:
            ordinal = int(item["ordinal"]) if item.get("ordinal") is not None else len(stages) + 1
            distance = float(item["distance"]) if item.get("distance") not in (None, "") else None
        except (TypeError, ValueError):
            logger.warning("Skipping stage with invalid ordinal or distance: %s", item)
            continue
        stages.append(Stage(
            stage_id=stage_id,
            name=str(item.get("name") or stage_id).strip(),
            ordinal=ordinal,
            rally_id=rally_id,
            status=status,
            distance_km=distance,
        ))

    logger.info("Fetched %d stages for rally %s", len(stages), rally_id)
    return stages


async def fetch_competitors(rally_id: str, base_url: Optional[str] = None,
                            api_key: Optional[str] = None,
                            transport: Optional[httpx.AsyncBaseTransport] = None) -> list[Competitor]:
    """Fetch the entry list of a rally.

    Expected row format:
        {"number": 7, "driver_id": "d-42",
         "driver": {"name": "Sébastien Ogier", "nationality": "FRA"},
         "co_driver": {"name": "Vincent Landais"},
         "team": {"name": "Toyota Gazoo Racing"},
         "car": {"make": "Toyota", "model": "GR Yaris"}}

    The competitor id is the driver id, stable across stages and rallies.
    """
    params = {"rally_id": f"eq.{rally_id}", "select": ENTRY_SELECT, "order": "number.asc"}
    logger.info("Fetching entry list for rally %s", rally_id)

    async with _client(base_url, api_key, transport) as client:
        resp = await client.get("/rest/v1/entries", params=params)
        resp.raise_for_status()
        data = resp.json()

    competitors = []
    for item in data:
        competitor_id = str(item.get("driver_id") or "").strip()
        driver = item.get("driver") or {}
        name = _name(driver) or str(item.get("driver_name") or "").strip()
        try:
            car_number = int(item.get("number"))
        except (TypeError, ValueError):
            logger.warning("Skipping entry with invalid car number: %s", item)
            continue
        if not competitor_id or not name:
            logger.warning("Skipping entry without driver: %s", item)
            continue

        car = item.get("car")
        if isinstance(car, dict):
            car = " ".join(str(car.get(k) or "").strip() for k in ("make", "model")).strip()
        competitors.append(Competitor(
            competitor_id=competitor_id,
            name=name,
            car_number=car_number,
            nationality=str(driver.get("nationality") or "").strip() if isinstance(driver, dict) else "",
            team=_name(item.get("team")),
            car=_name(car),
            co_driver=_name(item.get("co_driver")),
        ))

    logger.info("Fetched %d entries for rally %s", len(competitors), rally_id)
    return competitors
