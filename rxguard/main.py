"""rxguard application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from rxguard.api import fraud_prevention, health
from rxguard.core.exceptions import RxGuardError
from rxguard.logging_config import configure_logging

configure_logging()
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service on startup so misconfiguration fails fast."""
    from rxguard.service import get_fraud_prevention_service, reset_fraud_prevention_service

    log.info("Starting rxguard...")
    get_fraud_prevention_service()
    yield
    log.info("Shutting down rxguard...")
    reset_fraud_prevention_service()


app = FastAPI(
    title="rxguard",
    description="Selective-disclosure prescription credentials and claim fraud scoring",
    lifespan=lifespan,
)


@app.exception_handler(RxGuardError)
async def rxguard_error_handler(request: Request, exc: RxGuardError):
    log.warning(
        f"{request.method} {request.url.path} failed: {exc.code} {exc.message}",
        extra={"route": request.url.path},
    )
    return fraud_prevention.error_response(exc)


app.include_router(health.router)
app.include_router(fraud_prevention.router)
