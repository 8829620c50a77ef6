import logging
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from backend.config import RelayConfig
from backend.db import engine as default_engine, init_db
from backend.error_handlers import register_error_handlers
from backend.health_checks import check_database, check_env, check_relay, get_app_metadata
from backend.logging_config import setup_logging
from backend.relay.service import RelayService

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

# Track uptime
start_time = time.time()

# Get API key from env
API_KEY = os.getenv("API_KEY", "default-dev-key")

PUBLIC_API_PATHS = ["/api/docs", "/api/openapi"]


def create_app(relay_config: RelayConfig = None, engine=None, transport=None) -> FastAPI:
    """
    Build the host application.

    The relay service is created in the lifespan and kept on `app.state.relay`;
    `engine` and `transport` exist so tests can run against an in-memory
    database and a fake dice service.
    """
    engine = engine or default_engine
    session_factory = sessionmaker(bind=engine)

    # Lifespan context for startup/shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("🚀 Roll relay host starting")
        try:
            init_db(bind=engine)
            logger.info("✅ Database initialized")
        except Exception as e:
            logger.error(f"⚠️ DB init failed: {e}")
            raise

        from routes.player_websocket import WebSocketObserver, manager

        relay = RelayService(
            relay_config or RelayConfig.from_env(),
            session_factory=session_factory,
            presence=manager.is_online,
            remote_executor=manager.request_roll_execution,
            transport=transport,
        )
        relay.add_observer(WebSocketObserver(manager))
        app.state.relay = relay
        await relay.start()

        yield

        # Shutdown
        await relay.stop()
        logger.info("🛑 Roll relay host shutting down")

    # Create FastAPI app
    application = FastAPI(
        title="Roll Relay API",
        description="Relays remote dice rolls into the local tabletop session",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.session_factory = session_factory
    application.state.engine = engine

    # Add CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Middleware to attach request_id and check auth
    @application.middleware("http")
    async def add_request_id_and_auth(request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        # Check auth
        if request.url.path.startswith("/api/") and not any(
            request.url.path.startswith(x) for x in PUBLIC_API_PATHS
        ):
            provided_key = request.headers.get("X-API-Key")
            if not provided_key or provided_key != API_KEY:
                return JSONResponse(
                    status_code=403,
                    content={"error": "Invalid or missing X-API-Key", "request_id": request_id},
                )

        # Log request
        logger.info(f"{request.method} {request.url.path}", extra={"request_id": request_id})

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # Health check
    @application.get("/health")
    async def health_check():
        """Simple health check."""
        return {
            "status": "ok",
            "uptime_seconds": time.time() - start_time,
            "timestamp": time.time(),
        }

    # Health check with DB and relay status
    @application.get("/api/health")
    async def api_health_check(request: Request):
        """Detailed health check with DB, env and relay checks."""
        db_status = check_database(engine)
        relay_status = check_relay(getattr(request.app.state, "relay", None))
        degraded = db_status != "ok" or relay_status.get("status") == "stopped"

        return {
            "status": "degraded" if degraded else "ok",
            "uptime_seconds": time.time() - start_time,
            "database": db_status,
            "environment": check_env(),
            "relay": relay_status,
            "metadata": get_app_metadata(start_time),
            "timestamp": time.time(),
        }

    # ✅ Register routers (imported here to avoid circular imports)
    from routes.player_websocket import router as player_ws_router
    from routes.relay_fastapi import relay_blp_fastapi

    application.include_router(relay_blp_fastapi, prefix="/api", tags=["Relay"])
    application.include_router(player_ws_router)

    # Root endpoint
    @application.get("/")
    async def root():
        """API root."""
        return {
            "message": "Roll Relay API",
            "docs": "/docs",
            "openapi": "/openapi.json",
            "health": "/health",
            "api_health": "/api/health",
            "player_channel": "/api/relay/ws?token=<player token>",
        }

    register_error_handlers(application)
    return application


application = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(application, host="0.0.0.0", port=8000)
