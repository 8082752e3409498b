"""
Risk Scorer Service - HTTP surface for the transaction risk decision engine
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import EngineSettings, configure_logging
from .engine import RiskDecisionEngine
from .errors import TransactionValidationError
from .models import FraudAssessment
from .providers import (
    Collaborators,
    HttpDeviceRegistry,
    HttpDeviceReputation,
    HttpHistoryProvider,
    HttpIPReputation,
    HttpProfileProvider,
    InMemoryDeviceRegistry,
    InMemoryHistoryProvider,
    InMemoryProfileProvider,
    StaticReputation,
)

logger = structlog.get_logger()


class AnalyzeRequest(BaseModel):
    """Fraud analysis request body"""
    transaction: Optional[Dict[str, Any]] = Field(None, description="Transaction to assess")


def build_collaborators(settings: EngineSettings) -> Collaborators:
    """Wire HTTP clients for every configured service URL, in-memory stand-ins otherwise"""
    timeout = settings.lookup_timeout_seconds
    in_memory = [
        name for name, url in (
            ("profile", settings.profile_service_url),
            ("history", settings.history_service_url),
            ("device_reputation", settings.device_reputation_url),
            ("ip_reputation", settings.ip_reputation_url),
            ("device_registry", settings.device_registry_url),
        ) if not url
    ]
    if in_memory:
        logger.warning("collaborators_in_memory", collaborators=in_memory)
    return Collaborators(
        profiles=HttpProfileProvider(settings.profile_service_url, timeout)
        if settings.profile_service_url else InMemoryProfileProvider(),
        history=HttpHistoryProvider(settings.history_service_url, timeout)
        if settings.history_service_url else InMemoryHistoryProvider(),
        device_reputation=HttpDeviceReputation(settings.device_reputation_url, timeout)
        if settings.device_reputation_url else StaticReputation(),
        ip_reputation=HttpIPReputation(settings.ip_reputation_url, timeout)
        if settings.ip_reputation_url else StaticReputation(),
        devices=HttpDeviceRegistry(settings.device_registry_url, timeout)
        if settings.device_registry_url else InMemoryDeviceRegistry(),
    )


def require_bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return token


def create_app(engine: Optional[RiskDecisionEngine] = None,
               settings: Optional[EngineSettings] = None) -> FastAPI:
    """Build the service. The engine is constructed here, once, at start-up."""
    settings = settings or EngineSettings.from_env()
    configure_logging(settings.log_level)
    if engine is None:
        engine = RiskDecisionEngine.from_settings(settings, build_collaborators(settings))

    app = FastAPI(
        title="Risk Scorer",
        description="Scores payment attempts for fraud risk",
        version="1.0.0"
    )
    app.state.engine = engine
    app.state.settings = settings

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        logger.info(
            "request_in",
            method=request.method,
            path=request.url.path,
            content_length=request.headers.get("content-length", "0"),
        )
        response = await call_next(request)
        logger.info(
            "request_out",
            method=request.method,
            path=request.url.path,
            status=getattr(response, "status_code", None)
        )
        return response

    @app.exception_handler(TransactionValidationError)
    async def validation_error_handler(request: Request, exc: TransactionValidationError):
        logger.info("transaction_rejected", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=422,
            content={"error": {"code": exc.code, "message": exc.message, "errors": exc.errors}},
        )

    @app.get("/healthz")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "risk-scorer", "timestamp": datetime.now(timezone.utc)}

    @app.post("/analyze", response_model=FraudAssessment)
    @app.post("/api/fraud/analyze", response_model=FraudAssessment, include_in_schema=False)
    async def analyze_transaction(body: AnalyzeRequest, authorization: Optional[str] = Header(None)):
        """Assess a payment attempt and return the fraud decision"""
        require_bearer(authorization)
        if body.transaction is None:
            raise HTTPException(status_code=400, detail="Missing transaction data")
        return await app.state.engine.assess(body.transaction)

    return app


if __name__ == "__main__":
    import uvicorn
    settings = EngineSettings.from_env()
    logger.info("starting_risk_scorer", port=settings.port)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=settings.port)
