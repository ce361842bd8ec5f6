"""FastAPI application entry point.

Parley - real-time voice session orchestration.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from parley import __version__
from parley.api.routes import health, metrics
from parley.api.websocket.session_stream import session_stream_endpoint
from parley.config import Settings, get_settings
from parley.core.coordinator import SessionComponents
from parley.core.session import SessionStore
from parley.logging_config import setup_logging
from parley.services.factory import Backends, build_backends


def create_app(
    settings: Settings | None = None,
    *,
    backends: Backends | None = None,
    components: SessionComponents | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Tests pass in-memory ``backends`` (or fully built ``components``);
    otherwise the configured providers are used.
    """
    settings = settings or get_settings()
    backends = backends or build_backends(settings)
    components = components or SessionComponents.from_settings(backends, settings)
    store = SessionStore(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler.

        Startup:
        - Initialize logging

        Shutdown:
        - Close active sessions
        - Close backend connection pools
        """
        setup_logging(
            level=settings.log_level,
            enable_file=settings.is_production,
        )

        yield

        await store.close_all()
        await components.close()
        await backends.close()

    app = FastAPI(
        title="Parley API",
        description="Real-time voice session orchestration",
        version=__version__,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.backends = backends
    app.state.components = components
    app.state.store = store

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check routes
    app.include_router(health.router, tags=["Health"])

    # Metrics endpoint for Prometheus scraping
    app.include_router(metrics.router, tags=["Observability"])

    # WebSocket endpoint for voice sessions
    @app.websocket("/ws/sessions/{session_id}")
    async def session_ws(websocket: WebSocket, session_id: str):
        """WebSocket endpoint for a client voice session."""
        await session_stream_endpoint(
            websocket,
            session_id,
            store=store,
            components=components,
            settings=settings,
        )

    return app


def run() -> None:
    """Console entry point: serve with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "parley.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower(),
    )
