import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from aegis.config import settings
from aegis.database import Base, SessionLocal, engine as db_engine
from aegis.pipelines.decision_engine import CommandType, DecisionEngine
from aegis.schemas.analysis_schemas import (
    Ack,
    AnalysisResult,
    CommandRequest,
    ProtectionSettings,
    SettingsResponse,
    SettingsUpdate,
    Stats,
    UrlRequest,
)
from aegis.services.storage_service import SqlKeyValueStore
from aegis.api.security import verify_api_token
from aegis.utils.logging_config import StructuredLogger, init_logging, request_id_var

# Initialize structured logging
init_logging()

logger = StructuredLogger(__name__)

VERSION = "0.1.0"


def build_default_engine() -> DecisionEngine:
    """Engine persisting its state in the configured database."""
    Base.metadata.create_all(bind=db_engine)
    return DecisionEngine(store=SqlKeyValueStore(SessionLocal))


def get_engine(request: Request) -> DecisionEngine:
    return request.app.state.engine


def _require_url(url: str) -> str:
    if not url or not url.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Field 'url' is required.",
        )
    return url


def create_app(decision_engine: Optional[DecisionEngine] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = decision_engine or build_default_engine()
        await app.state.engine.start()
        try:
            yield
        finally:
            await app.state.engine.close()

    app = FastAPI(
        title="Aegis URL Risk API",
        version=VERSION,
        description="URL risk assessment engine: structural heuristics, reputation lookup and learned trust",
        docs_url="/docs" if settings.debug else None,  # Disable docs in production
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.get("/health")
    def health():
        """Health check endpoint - no auth required."""
        return {"status": "ok"}

    @app.get("/status")
    def status_info(request: Request):
        """API status and configuration info."""
        engine = get_engine(request)
        return {
            "status": "ok",
            "version": VERSION,
            "environment": settings.environment,
            "auth_enabled": bool(settings.api_token),
            "reputation_lookup_configured": engine.intel.enabled,
            "cache_entries": engine.cache.size,
            "session_overrides": len(engine.overrides),
            "commands": list(CommandType.ALL),
        }

    @app.post(
        "/analyze",
        response_model=AnalysisResult,
        dependencies=[Depends(verify_api_token)],
    )
    async def analyze(body: UrlRequest, engine: DecisionEngine = Depends(get_engine)):
        return await engine.analyze_url(_require_url(body.url))

    @app.post(
        "/override",
        response_model=Ack,
        dependencies=[Depends(verify_api_token)],
    )
    async def user_override(body: UrlRequest, engine: DecisionEngine = Depends(get_engine)):
        """The user chose to proceed to a flagged URL."""
        return await engine.user_override(_require_url(body.url))

    @app.post(
        "/block",
        response_model=Ack,
        dependencies=[Depends(verify_api_token)],
    )
    async def user_block(body: UrlRequest, engine: DecisionEngine = Depends(get_engine)):
        """The user chose to stay away from a flagged URL."""
        return await engine.user_block(_require_url(body.url))

    @app.get(
        "/stats",
        response_model=Stats,
        dependencies=[Depends(verify_api_token)],
    )
    async def get_stats(engine: DecisionEngine = Depends(get_engine)):
        return engine.get_stats()

    @app.get(
        "/history",
        response_model=List[AnalysisResult],
        dependencies=[Depends(verify_api_token)],
    )
    async def get_history(engine: DecisionEngine = Depends(get_engine)):
        """Retained analysis results, newest first."""
        return engine.get_history()

    @app.get(
        "/settings",
        response_model=ProtectionSettings,
        dependencies=[Depends(verify_api_token)],
    )
    async def get_settings(engine: DecisionEngine = Depends(get_engine)):
        return engine.protection

    @app.put(
        "/settings",
        response_model=SettingsResponse,
        dependencies=[Depends(verify_api_token)],
    )
    async def update_settings(body: SettingsUpdate, engine: DecisionEngine = Depends(get_engine)):
        new_settings = await engine.update_settings(body)
        return SettingsResponse(settings=new_settings)

    @app.post(
        "/commands",
        dependencies=[Depends(verify_api_token)],
    )
    async def run_command(body: CommandRequest, engine: DecisionEngine = Depends(get_engine)) -> Dict[str, Any]:
        """
        Message-style entry point for extension front-ends:
        {"type": "ANALYZE_URL", "url": "..."}, {"type": "GET_STATS"}, ...
        """
        if body.type not in CommandType.ALL:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unsupported command '{body.type}'. Must be one of {list(CommandType.ALL)}.",
            )
        result = await engine.dispatch(body.model_dump(exclude_none=True))
        if "error" in result:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result["error"])
        return result

    return app


app = create_app()
