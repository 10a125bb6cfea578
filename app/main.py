import os

from fastapi import Depends, FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.errors import SignerConfigurationError
from app.logging_config import get_logger, setup_logging
from app.models import AuditLog, Conversation, ExternalEvent, Message
from app.routers import chat
from app.services.metrics import render_metrics

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Orderdesk API",
    description="Chat turn pipeline with guest order verification",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)


@app.on_event("startup")
async def check_order_lookup_signer() -> None:
    """Refuse to start without a signing secret."""
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return
    try:
        chat.get_lookup_client()
    except SignerConfigurationError as exc:
        logger.critical("Order lookup signer is not configured", extra={"context": {"error": str(exc)}})
        raise


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def prometheus_metrics():
    body, content_type = render_metrics()
    return Response(content=body, media_type=content_type)


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "external_events": db.query(ExternalEvent).count(),
        "audit_logs": db.query(AuditLog).count(),
    }
