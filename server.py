"""
RallyTiming — Server entry point.

Starts the FastAPI server with the REST API and the WebSocket broadcast.
Usage:
    python server.py
    # or: uvicorn server:app --host 0.0.0.0 --port 8080 --reload
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rallycore.database import get_connection, init_db, migrate_db, restore_engine
from rallyapi import routes as api_routes
from rallyapi.websocket import router as ws_router

logger = logging.getLogger("rallytiming")

PORT = int(os.environ.get("RALLYTIMING_PORT", "8080"))
LOG_LEVEL = os.environ.get("RALLYTIMING_LOG_LEVEL", "INFO").upper()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: init database and rebuild standings from stored entries."""
    conn = get_connection()
    try:
        init_db(conn)
        migrate_db(conn)
        count = restore_engine(conn, api_routes.engine)
    finally:
        conn.close()
    logger.info("RallyTiming ready (%d rallies restored)", count)

    yield


app = FastAPI(title="RallyTiming", lifespan=lifespan)

# API + WebSocket routers
app.include_router(api_routes.router, prefix="/api")
app.include_router(ws_router)


# ─── Main ────────────────────────────────────────────────────────────

def _run_server(host: str = "0.0.0.0", port: int = PORT, reload: bool = False):
    import uvicorn
    uvicorn.run("server:app", host=host, port=port,
                log_level=LOG_LEVEL.lower(), reload=reload)


if __name__ == "__main__":
    import sys

    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    print(f"RallyTiming server — http://localhost:{PORT}/api/status")
    _run_server(reload="--dev" in sys.argv)
