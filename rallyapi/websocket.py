"""
websocket.py — WebSocket manager and broadcast for RallyTiming.

Protocol:
- Server → Client: standings, stage_classification
- Client → Server: subscribe {"rallies": [...]} (empty list follows all)
- Server → Client reply: subscribed

Single endpoint: ws://{host}:8080/ws
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from rallycore.models import StageClassification, StandingsSnapshot

logger = logging.getLogger("rallytiming.ws")

router = APIRouter()


class ConnectionManager:
    """Tracks connected clients and the rallies each one follows.

    A client that never subscribes, or subscribes to an empty list, receives
    every rally.
    """

    def __init__(self):
        self.subscriptions: dict[WebSocket, frozenset[str]] = {}

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.subscriptions[ws] = frozenset()
        logger.info("WS client joined (%d connected)", self.connection_count)

    def disconnect(self, ws: WebSocket):
        if self.subscriptions.pop(ws, None) is not None:
            logger.info("WS client left (%d connected)", self.connection_count)

    def subscribe(self, ws: WebSocket, rally_ids) -> frozenset[str]:
        rallies = frozenset(str(r) for r in rally_ids or ())
        if ws in self.subscriptions:
            self.subscriptions[ws] = rallies
            logger.debug("WS client follows %s", sorted(rallies) or "all rallies")
        return rallies

    def _followers(self, rally_id: str) -> list[WebSocket]:
        return [ws for ws, rallies in self.subscriptions.items()
                if not rallies or rally_id in rallies]

    async def send_to_rally(self, rally_id: str, message: dict):
        """Send a rally message to every client following that rally."""
        followers = self._followers(rally_id)
        if not followers:
            return
        payload = json.dumps(message, ensure_ascii=False)
        for ws in followers:
            try:
                await ws.send_text(payload)
            except Exception as e:
                logger.debug("WS dropping client after failed send: %s", e)
                self.disconnect(ws)

    async def broadcast_standings(self, snapshot: StandingsSnapshot,
                                  precision: str = "auto"):
        """Send a newly published standings snapshot."""
        await self.send_to_rally(snapshot.rally_id, {
            "type": "standings",
            "rally_id": snapshot.rally_id,
            "version": snapshot.version,
            "standings": snapshot.overall.to_dict(precision)["standings"] if snapshot.overall else [],
        })

    async def broadcast_stage_classification(self, rally_id: str, version: int,
                                             classification: StageClassification,
                                             precision: str = "auto"):
        """Send the classification of a stage that just received entries."""
        await self.send_to_rally(rally_id, {
            "type": "stage_classification",
            "rally_id": rally_id,
            "version": version,
            **classification.to_dict(precision),
        })

    @property
    def connection_count(self) -> int:
        return len(self.subscriptions)


# Singleton manager
manager = ConnectionManager()


# ─── WebSocket endpoint ───────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await manager.connect(ws)
    try:
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("WS ignoring non-JSON message")
                continue
            if isinstance(msg, dict) and msg.get("type") == "subscribe":
                rallies = manager.subscribe(ws, msg.get("rallies"))
                await ws.send_text(json.dumps({"type": "subscribed", "rallies": sorted(rallies)}))
    except WebSocketDisconnect:
        manager.disconnect(ws)
