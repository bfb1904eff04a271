"""
FastAPI server exposing the escrow engine.

The API layer is thin: it resolves the caller from request headers, hands
the request to the engine, relays the updated transaction to the admin
notifier in the background and maps engine errors to HTTP responses.

Authentication itself happens upstream; the gateway forwards the caller's
identity in ``X-User-Id`` and role in ``X-User-Role``.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import Field

from escrow_errors import (
    AssessmentUnavailableError,
    EscrowError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from escrow_models import Actor, AdminAction, EscrowTransaction, Recommendation, Role, CamelModel
from escrow_service import EscrowService
from notifications import EscrowNotifier

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    InvalidStateError: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AssessmentUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ==================== Pydantic Models ====================

class CreateEscrowRequest(CamelModel):
    """Body of an escrow creation request. The buyer is the caller."""
    seller_id: int
    product_id: int
    amount: Decimal


class EscrowActionRequest(CamelModel):
    escrow_id: int


class AssessmentRequest(EscrowActionRequest):
    """Risk assessment result posted by the assessor."""
    risk_score: int = Field(ge=0, le=100)
    recommendation: Recommendation
    confidence: int = Field(ge=0, le=100)
    reasons: List[str] = Field(default_factory=list)
    factors: Dict[str, bool] = Field(default_factory=dict)
    nonce: Optional[str] = None


class ProcessRequest(EscrowActionRequest):
    action: AdminAction
    note: Optional[str] = None


class CompleteRequest(EscrowActionRequest):
    note: Optional[str] = None


class DisputeRequest(EscrowActionRequest):
    reason: str


# ==================== Dependencies ====================

def get_service(request: Request) -> EscrowService:
    return request.app.state.service


def get_notifier(request: Request) -> EscrowNotifier:
    return request.app.state.notifier


def get_actor(
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
    x_user_role: str = Header("user", alias="X-User-Role")
) -> Actor:
    """
    Resolve the caller from gateway headers.

    Raises:
        HTTPException: 401 if no user id was forwarded
        ValidationError: If the role is unknown
    """
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    try:
        role = Role(x_user_role.lower())
    except ValueError:
        raise ValidationError(f"Unknown role: '{x_user_role}'")
    return Actor(user_id=x_user_id, role=role)


def serialize_transaction(service: EscrowService, transaction: EscrowTransaction) -> Dict[str, Any]:
    """
    Render a transaction for API clients.

    Adds the advisory ``riskTier`` and flags recommendations that disagree
    with their score band, so admins see both values side by side.
    """
    data = transaction.model_dump(mode='json', by_alias=True)
    tier = service.policy.tier_for(transaction)
    decision = transaction.ai_decision

    data['riskTier'] = tier.value if tier else None
    data['recommendationConflict'] = bool(
        decision
        and not decision.fallback
        and service.policy.is_conflicting(decision.recommendation, transaction.risk_score)
    )
    return data


# ==================== Application ====================

def create_app(
    service: Optional[EscrowService] = None,
    notifier: Optional[EscrowNotifier] = None,
    config: Optional[Any] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    When no service is given, the configured service and notifier are
    created on startup together with the automation scheduler, and all of
    them are released on shutdown.

    Args:
        service: Escrow engine (optional)
        notifier: Admin notifier (optional)
        config: Configuration instance (optional)

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.service is None

        if owned:
            from config import get_config
            from escrow_automation import EscrowAutomation
            from escrow_service import get_escrow_service
            from notifications import create_notifier

            app_config = config or get_config()
            app.state.notifier = create_notifier(app_config)
            await app.state.notifier.start()
            app.state.service = await get_escrow_service(app_config, app.state.notifier)
            app.state.automation = EscrowAutomation(app.state.service, app.state.notifier, app_config)
            await app.state.automation.start()

        logger.info("Escrow API starting up...")
        logger.info(
            f"Admin notifications: {'enabled' if app.state.notifier.enabled else 'disabled'}"
        )

        yield

        logger.info("Escrow API shutting down...")
        if owned:
            await app.state.automation.stop()
            await app.state.service.close()
            await app.state.service.store.disconnect()
            await app.state.notifier.stop()

    app = FastAPI(
        title="AI Escrow Service",
        description="Escrow lifecycle with AI risk assessment and admin review",
        version=getattr(config, 'app_version', '1.0.0'),
        lifespan=lifespan
    )
    app.state.service = service
    app.state.notifier = notifier or EscrowNotifier()
    app.state.automation = None

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        status_code = next(
            (ERROR_STATUS_CODES[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS_CODES),
            status.HTTP_400_BAD_REQUEST
        )
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.code}): {exc}")

        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "message": str(exc)}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "path": str(request.url.path)
            }
        )

    # ==================== Info ====================

    @app.get("/", tags=["Info"])
    async def root():
        """Welcome endpoint with API information."""
        return {
            "service": "AI Escrow Service",
            "version": app.version,
            "status": "running",
            "endpoints": {
                "escrow": "/api/escrow",
                "health": "/health",
                "docs": "/docs"
            },
            "description": "Escrow lifecycle with AI risk assessment and admin review"
        }

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        Health check endpoint.

        Returns:
            JSON response with service health status, 503 when degraded
        """
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "escrow-api"
        }

        escrow_service = request.app.state.service
        try:
            if escrow_service is None or not await escrow_service.store.ping():
                raise RuntimeError("store not available")
            health_status["database"] = "connected"
        except Exception as e:
            health_status["database"] = f"error: {str(e)}"
            health_status["status"] = "degraded"

        health_status["notifications"] = (
            "enabled" if request.app.state.notifier.enabled else "disabled"
        )

        status_code = (
            status.HTTP_200_OK if health_status["status"] == "healthy"
            else status.HTTP_503_SERVICE_UNAVAILABLE
        )
        return JSONResponse(content=health_status, status_code=status_code)

    # ==================== Transitions ====================

    @app.post("/api/escrow/create", tags=["Escrow"])
    async def create_escrow(
        body: CreateEscrowRequest,
        background_tasks: BackgroundTasks,
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service),
        notifier: EscrowNotifier = Depends(get_notifier)
    ):
        transaction = await service.create(
            buyer_id=actor.user_id,
            seller_id=body.seller_id,
            product_id=body.product_id,
            amount=body.amount
        )
        background_tasks.add_task(notifier.notify_created, transaction)
        return serialize_transaction(service, transaction)

    @app.post("/api/escrow/assessment", tags=["Escrow"])
    async def record_assessment(
        body: AssessmentRequest,
        background_tasks: BackgroundTasks,
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service),
        notifier: EscrowNotifier = Depends(get_notifier)
    ):
        transaction = await service.record_assessment(
            body.escrow_id,
            risk_score=body.risk_score,
            recommendation=body.recommendation,
            confidence=body.confidence,
            reasons=body.reasons,
            nonce=body.nonce,
            factors=body.factors,
            actor=actor
        )
        background_tasks.add_task(
            notifier.notify_assessed, transaction, service.policy.tier_for(transaction)
        )
        return serialize_transaction(service, transaction)

    @app.post("/api/escrow/process", tags=["Escrow"])
    async def process_escrow(
        body: ProcessRequest,
        background_tasks: BackgroundTasks,
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service),
        notifier: EscrowNotifier = Depends(get_notifier)
    ):
        transaction = await service.admin_process(
            body.escrow_id, actor, body.action, note=body.note
        )
        background_tasks.add_task(notifier.notify_admin_decision, transaction)
        return serialize_transaction(service, transaction)

    @app.post("/api/escrow/reanalyze", tags=["Escrow"])
    async def reanalyze_escrow(
        body: EscrowActionRequest,
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service)
    ):
        transaction = await service.reanalyze(body.escrow_id, actor)
        return {
            "message": "Escrow transaction queued for re-analysis",
            "escrow": serialize_transaction(service, transaction)
        }

    @app.post("/api/escrow/complete", tags=["Escrow"])
    async def complete_escrow(
        body: CompleteRequest,
        background_tasks: BackgroundTasks,
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service),
        notifier: EscrowNotifier = Depends(get_notifier)
    ):
        transaction = await service.complete(body.escrow_id, actor, note=body.note)
        background_tasks.add_task(notifier.notify_completed, transaction)
        return serialize_transaction(service, transaction)

    @app.post("/api/escrow/dispute", tags=["Escrow"])
    async def dispute_escrow(
        body: DisputeRequest,
        background_tasks: BackgroundTasks,
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service),
        notifier: EscrowNotifier = Depends(get_notifier)
    ):
        transaction = await service.dispute(body.escrow_id, actor, body.reason)
        background_tasks.add_task(notifier.notify_disputed, transaction)
        return serialize_transaction(service, transaction)

    # ==================== Queries ====================

    @app.get("/api/escrow/stats", tags=["Escrow"])
    async def escrow_stats(
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service)
    ):
        stats = await service.get_stats(actor=actor)
        return stats.model_dump(mode='json', by_alias=True)

    @app.get("/api/escrow/dashboard", tags=["Escrow"])
    async def escrow_dashboard(
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service)
    ):
        stats = await service.get_dashboard_stats(actor=actor)
        return stats.model_dump(mode='json', by_alias=True)

    @app.get("/api/escrow/transactions", tags=["Escrow"])
    async def list_transactions(
        status_filter: str = Query("pending", alias="status"),
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service)
    ):
        transactions = await service.list_by_status(status_filter, actor=actor)
        return [serialize_transaction(service, t) for t in transactions]

    @app.get("/api/escrow/transactions/{transaction_id}", tags=["Escrow"])
    async def get_transaction(
        transaction_id: int,
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service)
    ):
        transaction = await service.get_transaction(transaction_id, actor=actor)
        return serialize_transaction(service, transaction)

    @app.get("/api/escrow/users/{user_id}/transactions", tags=["Escrow"])
    async def list_user_transactions(
        user_id: int,
        actor: Actor = Depends(get_actor),
        service: EscrowService = Depends(get_service)
    ):
        transactions = await service.list_by_participant(user_id, actor=actor)
        return [serialize_transaction(service, t) for t in transactions]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Run the server
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
