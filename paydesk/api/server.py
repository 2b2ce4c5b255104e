# paydesk/api/server.py
# ============================================================================
# PAYDESK — FASTAPI SERVER
# ============================================================================
# Order creation, payment verification, gateway webhooks and health checks
# ============================================================================

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError

from paydesk import __version__
from paydesk.config import Settings
from paydesk.errors import GatewayError, InvalidAmountError
from paydesk.invoices import InvoiceRenderer
from paydesk.logging_config import configure_logging
from paydesk.pipeline.gateway import OrderDesk, RazorpayClient
from paydesk.pipeline.journal import FileOrderJournal, IOrderJournal
from paydesk.pipeline.orchestrator import VerificationOrchestrator
from paydesk.pipeline.retry import RetryPolicy
from paydesk.schemas.billing import CreateOrderRequest, VerifyRequest
from paydesk.services import INotifier, build_notifier
from paydesk.storage import IArchiveSink, build_archive_sink

logger = logging.getLogger("Paydesk.Server")


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class PaydeskServices:
    """Everything the routes need, built once per process."""
    settings: Settings
    journal: IOrderJournal
    gateway: RazorpayClient
    desk: OrderDesk
    orchestrator: VerificationOrchestrator
    archive_sink: Optional[IArchiveSink] = None
    notifier: Optional[INotifier] = None

    async def close(self, drain_timeout: float = 10.0) -> None:
        cancelled = await self.orchestrator.drain(timeout=drain_timeout)
        if cancelled:
            logger.warning(f"Cancelled {cancelled} unfinished background task(s) on shutdown")
        await self.gateway.close()
        if self.archive_sink:
            await self.archive_sink.close()
        if self.notifier:
            await self.notifier.close()


def build_services(settings: Settings) -> PaydeskServices:
    journal = FileOrderJournal(settings.orders_file, settings.verified_file)
    gateway = RazorpayClient(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        base_url=settings.razorpay_api_url,
        timeout_seconds=settings.sink_timeout_seconds,
    )
    archive_sink = build_archive_sink(settings)
    notifier = build_notifier(settings)

    orchestrator = VerificationOrchestrator(
        journal=journal,
        renderer=InvoiceRenderer(settings.store, font_path=settings.invoice_font_path),
        key_secret=settings.razorpay_key_secret,
        webhook_secret=settings.razorpay_webhook_secret,
        archive_sink=archive_sink,
        notifier=notifier,
        retry_policy=RetryPolicy(
            max_attempts=settings.sink_max_attempts,
            timeout_seconds=settings.sink_timeout_seconds,
            backoff_seconds=settings.sink_retry_backoff_seconds,
        ),
        mail_from=settings.mail_from,
        mail_bcc=settings.mail_bcc,
        store_name=settings.store.name,
        currency=settings.currency,
        tmp_dir=settings.invoice_tmp_dir,
        notify_in_background=settings.notify_in_background,
    )

    return PaydeskServices(
        settings=settings,
        journal=journal,
        gateway=gateway,
        desk=OrderDesk(gateway, journal, currency=settings.currency),
        orchestrator=orchestrator,
        archive_sink=archive_sink,
        notifier=notifier,
    )


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    orders_indexed: int
    archive_sink: Optional[str] = None
    notify_sink: Optional[str] = None


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    services: Optional[PaydeskServices] = None,
) -> FastAPI:
    """Build the app. Pass ``services`` to run against pre-wired components."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = services
        if active is None:
            resolved = settings or Settings.from_env()
            configure_logging(resolved.log_level, resolved.log_format)
            active = build_services(resolved)

        if not active.settings.razorpay_key_secret:
            logger.warning("RAZORPAY_KEY_SECRET is not set - /verify will reject every payment")
        if not active.settings.razorpay_webhook_secret:
            logger.warning("RAZORPAY_WEBHOOK_SECRET is not set - webhooks are accepted unverified")

        app.state.services = active
        app.state.started_at = datetime.now(timezone.utc)
        logger.info(
            f"Paydesk {__version__} started | orders_indexed={len(active.journal)} | "
            f"archive={getattr(active.archive_sink, 'name', None)} | "
            f"notify={getattr(active.notifier, 'name', None)}"
        )

        yield

        logger.info("Shutting down Paydesk...")
        await active.close()

    app = FastAPI(
        title="Paydesk",
        description="Razorpay payment verification and invoice fulfillment",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    # ------------------------------------------------------------------------
    # ENDPOINTS
    # ------------------------------------------------------------------------

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "Paydesk payment server is running"

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        active: PaydeskServices = request.app.state.services
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=__version__,
            uptime_seconds=uptime,
            orders_indexed=len(active.journal),
            archive_sink=getattr(active.archive_sink, "name", None),
            notify_sink=getattr(active.notifier, "name", None),
        )

    @app.post("/create-order")
    async def create_order(request: Request):
        active: PaydeskServices = request.app.state.services
        body = await _json_body(request)
        try:
            order_request = CreateOrderRequest.model_validate(body)
            order = await active.desk.create_order(order_request)
        except (InvalidAmountError, ValidationError):
            return JSONResponse({"error": "Amount (in paise) is required"}, status_code=400)
        except GatewayError as e:
            logger.error(f"Order creation failed: {e}")
            return JSONResponse({"error": "Failed to create order"}, status_code=500)
        return order

    @app.post("/verify")
    async def verify(request: Request):
        active: PaydeskServices = request.app.state.services
        body = await _json_body(request)
        try:
            verify_request = VerifyRequest.model_validate(body)
        except ValidationError:
            return JSONResponse({"ok": False, "error": "Missing fields"}, status_code=400)

        result = await active.orchestrator.verify(verify_request)
        return JSONResponse(result.to_response(), status_code=result.status_code)

    @app.post("/webhook", response_class=PlainTextResponse)
    async def webhook(request: Request):
        active: PaydeskServices = request.app.state.services
        raw_body = await request.body()
        result = await active.orchestrator.handle_webhook(
            raw_body, request.headers.get("X-Razorpay-Signature")
        )
        return PlainTextResponse(result.message, status_code=result.status_code)

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
