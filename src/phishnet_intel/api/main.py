# Threat Intelligence - FastAPI Backend
#
# App factory and uvicorn entry point.  The app mounts the threat
# intelligence router; on startup it installs the admin token and
# optionally starts the ingestion scheduler, on shutdown it stops it.

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .. import __version__
from ..core import EventSeverity, EventType, get_audit_logger
from ..service import ThreatIntelService
from .routes import get_service, router, set_service
from .security import clear_admin_token, initialize_admin_token

logger = logging.getLogger(__name__)


def create_app(
    service: Optional[ThreatIntelService] = None,
    start_scheduler: bool = False,
    run_immediately: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Engine facade to serve (built from settings when None)
        start_scheduler: Start periodic ingestion on startup
        run_immediately: First scheduled run fires at startup
    """
    if service is not None:
        set_service(service)

    app = FastAPI(
        title="PhishNet Threat Intelligence API",
        description="Threat feed ingestion and aggregation engine",
        version=__version__,
    )
    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        svc = get_service()
        if svc.settings.admin_token:
            initialize_admin_token(svc.settings.admin_token)
        else:
            clear_admin_token()
            logger.warning(
                "PHISHNET_ADMIN_TOKEN not set: admin endpoints answer 503"
            )
        if start_scheduler:
            svc.start(run_immediately=run_immediately)
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_START,
            severity=EventSeverity.INFO,
            message="Threat intel API server started",
            details={"scheduler": start_scheduler},
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        get_service().stop()
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.INFO,
            message="Threat intel API server shutting down",
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app


def start_api_server(
    host: str = "127.0.0.1",
    port: int = 8000,
    service: Optional[ThreatIntelService] = None,
):
    """
    Start the API server with the ingestion scheduler running.

    Args:
        host: Host to bind to (default: localhost only)
        port: Port to listen on
        service: Engine facade (built from settings when None)
    """
    app = create_app(service=service, start_scheduler=True)
    uvicorn.run(app, host=host, port=port, log_level="info")
