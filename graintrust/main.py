from contextlib import asynccontextmanager

from bson import ObjectId
from bson.errors import InvalidId
import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from graintrust.config import Settings, get_settings
from graintrust.database import Database, notification_helper
from graintrust.errors import (
    CertificateNotFoundError,
    ConfigurationError,
    GrainTrustError,
    TransientInfrastructureError,
    ValidationError,
)
from graintrust.services import Services, get_services
from utils.log import configure_logging
# ROUTERS
from routes.batches import router as batch_router
from routes.public import router as public_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    ledger_transport: httpx.AsyncBaseTransport | None = None,
    ca_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database.connect(settings.mongo_uri, settings.mongo_db_name)
        await db.ensure_indexes()
        app.state.services = Services(settings, db, ledger_transport=ledger_transport, ca_transport=ca_transport)
        logger.info(
            "automation_started",
            bridge=settings.fabric_bridge_url,
            blockchain=f"{settings.channel_name}/{settings.chaincode_name}",
        )
        try:
            yield
        finally:
            await app.state.services.dispatcher.drain()
            if database is None:
                db.close()

    app = FastAPI(title="GrainTrust Ledger Automation", lifespan=lifespan)

    # ================= CORS =================
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ================= ERRORS =================
    @app.exception_handler(GrainTrustError)
    async def grain_trust_error_handler(request: Request, exc: GrainTrustError):
        if isinstance(exc, CertificateNotFoundError):
            status = 404
        elif isinstance(exc, ValidationError):
            status = 400
        elif isinstance(exc, TransientInfrastructureError):
            status = 503
        else:
            status = 500
        if isinstance(exc, ConfigurationError):
            logger.error("configuration_error", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=status, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        missing = [".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request body", "kind": "validation", "fields": missing},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("unexpected_error", path=request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc), "kind": "unexpected"})

    # ================= ROUTERS =================
    app.include_router(batch_router)
    app.include_router(public_router)

    # =====================================================
    # NOTIFICATIONS
    # =====================================================

    @app.get("/api/notifications/{user_id}")
    async def get_notifications(user_id: str, services: Services = Depends(get_services)):
        notifications = []
        async for n in services.database.notifications.find(
            {"user_id": user_id},
            sort=[("createdAt", -1)]
        ):
            notifications.append(notification_helper(n))
        return notifications

    @app.put("/api/notifications/{notification_id}/read")
    async def mark_notification_read(notification_id: str, services: Services = Depends(get_services)):
        try:
            oid = ObjectId(notification_id)
        except InvalidId:
            raise HTTPException(400, "Invalid notification id")
        await services.database.notifications.update_one({"_id": oid}, {"$set": {"read": True}})
        return {"message": "Notification marked as read"}

    # ================= HEALTH =================
    @app.get("/health")
    async def health():
        return {
            "status": "OK",
            "service": "GrainTrust Automation",
            "blockchain": f"{settings.channel_name}/{settings.chaincode_name}",
        }

    return app


app = create_app()
