"""
Checkout HTTP Server
====================
FastAPI surface over checkout sessions plus the Stripe webhook.

Sessions live in an in-process registry keyed by session id, one per
open checkout view. NO BUSINESS LOGIC - routing and status mapping only.
"""

import logging
import uuid
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import stripe
import uvicorn

from cart import GuestCartStore, ServerCartStore, new_guest_session_id
from checkout import CheckoutSession
from checkout_realtime import ChangeFeed, SupabaseChangeFeed, DEBOUNCE_SECONDS
from config import get_config, validate_configuration
from db import DatabaseClient
from discounts import DiscountService
from notifications import OrderConfirmationNotifier
from order import PlacementErrorKind, PlacementResult
from payments import (
    PaymentProcessor,
    StripePaymentProcessor,
    map_webhook_event,
    parse_webhook_event,
)
from pricing import PricingPolicy


logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST BODIES
# ============================================================================

class StartSessionRequest(BaseModel):
    user_id: Optional[str] = Field(None, description="Authenticated user id")
    guest_session_id: Optional[str] = Field(None, description="Existing guest session token")
    email: Optional[str] = Field(None, description="Account or guest email")
    phone: Optional[str] = Field(None, description="Phone for SMS confirmation")


class AddressForm(BaseModel):
    full_name: str = ""
    street_address: str = ""
    address_line2: str = ""
    city: str = ""
    state_province: str = ""
    postal_code: str = ""
    country: str = ""
    phone_number: str = ""


class DiscountRequest(BaseModel):
    code: str = Field(..., min_length=1)


class PaymentSuccessRequest(BaseModel):
    order_id: Optional[str] = None


class PaymentErrorRequest(BaseModel):
    message: str = Field(..., min_length=1)


class RedirectReturnRequest(BaseModel):
    url: str


class GuestEmailRequest(BaseModel):
    email: str


# ============================================================================
# SERVICES & REGISTRY
# ============================================================================

@dataclass
class CheckoutServices:
    """Shared collaborators for every session in this process."""
    db: Any
    payments: PaymentProcessor
    policy: PricingPolicy = field(default_factory=PricingPolicy)
    feed: Optional[ChangeFeed] = None
    notifier: Optional[OrderConfirmationNotifier] = None
    discounts: Optional[DiscountService] = None
    guest_cart_dir: Path = Path(".guest_carts")
    success_path: str = "/order"
    webhook_secret: Optional[str] = None
    debounce_seconds: float = DEBOUNCE_SECONDS
    sessions: Dict[str, CheckoutSession] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config) -> "CheckoutServices":
        db = DatabaseClient(
            read_timeout=config.supabase.read_timeout,
            rpc_timeout=config.supabase.rpc_timeout
        )

        feed = None
        if config.features.enable_realtime:
            feed = SupabaseChangeFeed(
                config.supabase.url,
                config.supabase.key,
                retry_delay=config.realtime.subscribe_retry_delay,
                max_retries=config.realtime.max_subscribe_retries
            )

        discounts = None
        if config.features.enable_discount_codes:
            discounts = DiscountService(db, currency=config.checkout.currency_code)

        return cls(
            db=db,
            payments=StripePaymentProcessor(
                config.stripe.secret_key,
                timeout=config.stripe.request_timeout
            ),
            policy=PricingPolicy.from_config(config.checkout),
            feed=feed,
            notifier=OrderConfirmationNotifier.from_config(db, config),
            discounts=discounts,
            guest_cart_dir=config.checkout.guest_cart_dir,
            success_path=config.checkout.success_redirect_path,
            webhook_secret=config.stripe.webhook_secret,
            debounce_seconds=config.realtime.debounce_seconds
        )

    async def start(self):
        if hasattr(self.db, "start"):
            await self.db.start()
        if self.notifier:
            await self.notifier.start()

    async def stop(self):
        for session_id in list(self.sessions):
            await close_session(self, session_id)
        if self.notifier:
            await self.notifier.stop()
        if hasattr(self.db, "stop"):
            await self.db.stop()


async def close_session(services: CheckoutServices, session_id: str):
    """Unmount and forget a session."""
    session = services.sessions.pop(session_id, None)
    if session is None:
        return
    try:
        await session.unmount()
    except Exception as e:
        logger.error(f"Error closing session {session_id}: {str(e)}", exc_info=True)


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app(services: Optional[CheckoutServices] = None) -> FastAPI:
    """
    Build the app. Without services, they are built from the environment
    on startup.
    """
    app = FastAPI(title="Restaurant Checkout Service")
    app.state.services = services

    if services is None:
        config = get_config()
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.server.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"]
        )

    def get_services() -> CheckoutServices:
        if app.state.services is None:
            raise HTTPException(status_code=503, detail="Service not ready")
        return app.state.services

    def get_session(session_id: str, services: CheckoutServices = Depends(get_services)) -> CheckoutSession:
        session = services.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Checkout session not found")
        return session

    def view(session: CheckoutSession, **extra) -> Dict[str, Any]:
        body = session.snapshot()
        body["notices"] = [notice.to_dict() for notice in session.drain_notices()]
        body.update(extra)
        return body

    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            app.state.services = CheckoutServices.from_config(get_config())
        await app.state.services.start()
        logger.info("Checkout server started")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down server...")
        if app.state.services is not None:
            await app.state.services.stop()
        logger.info("Server shutdown complete")

    # ------------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        services = app.state.services
        db = getattr(services, "db", None)
        degraded = hasattr(db, "is_healthy") and not db.is_healthy()
        return {
            "status": "degraded" if degraded else "healthy",
            "active_sessions": len(services.sessions) if services else 0,
            "database": db.get_stats() if hasattr(db, "get_stats") else None,
            "timestamp": datetime.utcnow().isoformat()
        }

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------------

    @app.post("/checkout/sessions", status_code=201)
    async def start_session(body: StartSessionRequest, services: CheckoutServices = Depends(get_services)):
        if body.user_id:
            cart_store = ServerCartStore(services.db, body.user_id)
        else:
            cart_store = GuestCartStore(
                body.guest_session_id or new_guest_session_id(),
                services.guest_cart_dir
            )

        session_id = str(uuid.uuid4())
        session = CheckoutSession(
            session_id,
            services.db,
            cart_store,
            services.payments,
            policy=services.policy,
            feed=services.feed,
            notifier=services.notifier,
            discounts=services.discounts,
            user_id=body.user_id,
            customer_email=body.email,
            customer_phone=body.phone,
            success_path=services.success_path,
            debounce_seconds=services.debounce_seconds
        )
        await session.mount()
        services.sessions[session_id] = session

        logger.info(f"Checkout session opened: {session_id}")
        return view(session)

    @app.get("/checkout/sessions/{session_id}")
    async def get_checkout(session: CheckoutSession = Depends(get_session)):
        return view(session)

    @app.delete("/checkout/sessions/{session_id}")
    async def end_session(session_id: str, services: CheckoutServices = Depends(get_services)):
        if session_id not in services.sessions:
            raise HTTPException(status_code=404, detail="Checkout session not found")
        await close_session(services, session_id)
        return {"status": "closed"}

    # ------------------------------------------------------------------------
    # Address, email & discount
    # ------------------------------------------------------------------------

    @app.post("/checkout/sessions/{session_id}/address/saved/{address_id}")
    async def select_saved_address(address_id: str, session: CheckoutSession = Depends(get_session)):
        try:
            session.select_saved_address(address_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Saved address not found")
        return view(session)

    @app.put("/checkout/sessions/{session_id}/address")
    async def use_manual_address(form: AddressForm, session: CheckoutSession = Depends(get_session)):
        session.use_manual_address(form.model_dump())
        return view(session)

    @app.put("/checkout/sessions/{session_id}/email")
    async def set_guest_email(body: GuestEmailRequest, session: CheckoutSession = Depends(get_session)):
        if session.user_id:
            raise HTTPException(status_code=400, detail="Account email cannot be changed here")
        session.customer_email = body.email.strip()
        return view(session)

    @app.post("/checkout/sessions/{session_id}/discount")
    async def apply_discount(body: DiscountRequest, session: CheckoutSession = Depends(get_session)):
        evaluation = await session.apply_discount(body.code)
        return view(
            session,
            discount_result={
                "valid": evaluation.valid,
                "error": evaluation.error,
                "message": evaluation.message,
            }
        )

    @app.delete("/checkout/sessions/{session_id}/discount")
    async def remove_discount(session: CheckoutSession = Depends(get_session)):
        session.remove_discount()
        return view(session)

    # ------------------------------------------------------------------------
    # Orders & payment
    # ------------------------------------------------------------------------

    def placement_response(session: CheckoutSession, result: PlacementResult) -> JSONResponse:
        if result.success:
            return JSONResponse(status_code=200, content=view(session))

        status_code = {
            PlacementErrorKind.VALIDATION: 422,
            PlacementErrorKind.REJECTED: 409,
            PlacementErrorKind.PAYMENT: 502,
        }.get(result.error_kind, 400)

        return JSONResponse(
            status_code=status_code,
            content=view(
                session,
                error={
                    "kind": result.error_kind.value if result.error_kind else None,
                    "message": result.error,
                    "missing_fields": result.missing_fields,
                    "recoverable": result.recoverable,
                }
            )
        )

    @app.post("/checkout/sessions/{session_id}/orders")
    async def place_order(session: CheckoutSession = Depends(get_session)):
        result = await session.place_order()
        return placement_response(session, result)

    @app.post("/checkout/sessions/{session_id}/payment/retry")
    async def retry_payment(session: CheckoutSession = Depends(get_session)):
        result = await session.retry_payment()
        return placement_response(session, result)

    @app.post("/checkout/sessions/{session_id}/payment/success")
    async def payment_success(body: PaymentSuccessRequest, session: CheckoutSession = Depends(get_session)):
        outcome = await session.on_payment_success(body.order_id)
        if not outcome.completed:
            raise HTTPException(status_code=409, detail=outcome.error or "Payment could not be confirmed")
        return view(session, duplicate=outcome.duplicate)

    @app.post("/checkout/sessions/{session_id}/payment/error")
    async def payment_error(body: PaymentErrorRequest, session: CheckoutSession = Depends(get_session)):
        await session.on_payment_error(body.message)
        return view(session)

    @app.post("/checkout/sessions/{session_id}/payment/return")
    async def payment_return(body: RedirectReturnRequest, session: CheckoutSession = Depends(get_session)):
        outcome = await session.on_redirect_return(body.url)
        return view(
            session,
            redirect_detected=outcome is not None,
            completed=bool(outcome and outcome.completed)
        )

    @app.post("/checkout/sessions/{session_id}/confirmation/ack")
    async def acknowledge(session: CheckoutSession = Depends(get_session)):
        path = await session.acknowledge_confirmation()
        return view(session, redirect_to=path)

    # ------------------------------------------------------------------------
    # Stripe webhook
    # ------------------------------------------------------------------------

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request, services: CheckoutServices = Depends(get_services)):
        payload = await request.body()
        signature = request.headers.get("stripe-signature")

        try:
            event = parse_webhook_event(payload, signature, services.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.warning("Webhook signature verification failed")
            raise HTTPException(status_code=400, detail="Invalid signature")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        outcome = map_webhook_event(event)
        logger.info(f"Webhook event received: {outcome.event_type}")

        if outcome.order_status and outcome.order_id:
            updated = await services.db.update_order_status(outcome.order_id, outcome.order_status)
            if not updated:
                raise HTTPException(status_code=500, detail="Failed to update order")

        return {"received": True}

    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the checkout server."""
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.server.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    validate_configuration()

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")
    logger.info(f"Base URL: {config.server.base_url}")

    uvicorn.run(
        create_app(),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
