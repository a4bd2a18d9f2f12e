"""
FlightSurety Oracle Service - HTTP Query Endpoints

Read-only endpoints for the dapp, served by FastAPI:

    GET /api         - API banner
    GET /flights     - Known flights (static reference data)
    GET /eventIndex  - Selected index of the latest oracle request
    GET /requests    - Tracked oracle requests, optionally filtered by state
    GET /health      - Pool, tracker and dispatcher diagnostics

The oracle service runs inside the app's lifespan.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from ..config import OracleServiceConfig, configure_logging, get_config
from ..models import RequestState
from ..service import OracleService


def create_app(service: OracleService, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the query API around a service.

    Args:
        service: The oracle service to expose
        manage_lifecycle: Start/stop the service with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.shutdown()

    app = FastAPI(
        title="FlightSurety Oracle Service",
        description="Oracle pool that answers FlightSurety flight-status requests",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=service.config.api.cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.state.service = service

    @app.get("/api")
    def api_banner():
        return {"message": "An API for use with your Dapp!"}

    @app.get("/flights")
    def flights():
        return {"result": [flight.model_dump() for flight in service.list_known_flights()]}

    @app.get("/eventIndex")
    def event_index():
        return {"result": service.get_current_resolution_index()}

    @app.get("/requests")
    def requests(state: Optional[str] = None):
        selected = None
        if state is not None:
            try:
                selected = RequestState(state.upper())
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown request state: {state}")
        return {"result": [record.to_dict() for record in service.list_requests(selected)]}

    @app.get("/health")
    def health():
        return {"status": "ok" if service.running else "stopped", **service.status()}

    return app


def main(config: Optional[OracleServiceConfig] = None) -> None:
    """Run the oracle service and its query API."""
    config = config or get_config()
    configure_logging(config.logging)
    app = create_app(OracleService(config))
    uvicorn.run(app, host=config.api.host, port=config.api.port)


if __name__ == "__main__":
    main()
