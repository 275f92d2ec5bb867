"""
FastAPI Application Entry Point

HungerWood Order Core - order lifecycle, live status updates and the
wallet/referral ledger behind a thin HTTP surface.

Endpoints:
    - POST /api/users: Register an account (stand-in for the OTP service)
    - POST /api/orders: Place an order
    - GET /api/orders: List orders (own orders, or all for admins)
    - GET /api/orders/{ref}: Get an order by id or order code
    - PATCH /api/orders/{ref}/status: Move an order through its lifecycle
    - GET /api/orders/{ref}/stream: Live status updates (Server-Sent Events)
    - GET /api/wallet...: Balance, transactions, validation, referrals
    - POST /api/admin/wallet/{user_id}/credit|debit: Manual adjustments
    - GET /api/admin/stats, GET /api/sse/stats: Admin statistics
    - GET /health: System health check

The caller's identity arrives in the X-User-Id header; authentication
itself happens upstream.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from hungerwood.container import OrderingCore, get_core
from hungerwood.core.config import get_settings, setup_logging
from hungerwood.core.exceptions import OrderCoreError
from hungerwood.core.results import OperationResult
from hungerwood.database import dispose_engine, init_db
from hungerwood.models import OrderStatus, OrderType, TransactionReason, TransactionType, UserRole
from hungerwood.schemas import (
    Account,
    AccountCreate,
    ErrorResponse,
    HealthResponse,
    OrderCreate,
    ReferralApplyRequest,
    StatusUpdateRequest,
    WalletAdjustmentRequest,
    WalletValidateRequest,
)
from hungerwood.services.broadcaster import (
    QueueSubscriber,
    StreamEvent,
    connected_envelope,
    error_envelope,
    format_sse,
    initial_envelope,
)

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    if app.state.core is None:
        # Initialize database
        if settings.use_database:
            await init_db()
            logger.info("✅ Database initialized")
        app.state.core = get_core()

    core: OrderingCore = app.state.core
    await core.start()
    logger.info(f"✅ Storage: {core.repositories.backend}")
    logger.info(f"✅ Live updates: max {core.broadcaster.max_subscribers} subscribers per order")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await core.stop()
    if settings.use_database and core.repositories.backend == "database":
        await dispose_engine()
    logger.info("✅ Cleanup complete")


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_ordering_core(request: Request) -> OrderingCore:
    return request.app.state.core


async def current_user(
    core: OrderingCore = Depends(get_ordering_core),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> Account:
    """Resolve the calling account from the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    account = await core.accounts.get(x_user_id)
    if account is None or not account.is_active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return account


async def require_admin(user: Account = Depends(current_user)) -> Account:
    if user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def respond(result: OperationResult, status_code: int = 200) -> JSONResponse:
    """Turn an OperationResult into the standard JSON envelope."""
    if not result.success:
        return JSONResponse(status_code=result.http_status, content=result.to_dict())
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.to_dict()))


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": True, "data": data}, custom_encoder={Decimal: str}),
    )


async def check_redis() -> str:
    if settings.is_development:
        return "skipped (development)"
    client = redis.from_url(settings.redis_url, socket_timeout=2)
    try:
        await client.ping()
        return "healthy"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f"unhealthy: {str(e)}"
    finally:
        await client.aclose()


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(core: Optional[OrderingCore] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        core: Ordering core to serve; the process-wide one when omitted
    """
    app = FastAPI(
        title=settings.app_name,
        description=(
            "Order lifecycle state machine, live order status streaming and "
            "the wallet/referral ledger of the HungerWood restaurant backend."
        ),
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )
    app.state.core = core

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    register_error_handlers(app)
    return app


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # ROOT & HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """API root with navigation links."""
        return {
            "message": f"🍽️ Welcome to {settings.restaurant_name} - {settings.app_name}",
            "version": settings.app_version,
            "environment": settings.env_mode.value,
            "documentation": "/docs",
            "health": "/health",
        }

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="System Health Check",
    )
    async def health_check(core: OrderingCore = Depends(get_ordering_core)) -> HealthResponse:
        """Verify all system components are operational."""
        storage_ok = await core.health_check()
        storage_status = f"{core.repositories.backend}: {'healthy' if storage_ok else 'unhealthy'}"
        redis_status = await check_redis()

        overall = "operational" if storage_ok and not redis_status.startswith("unhealthy") else "degraded"
        return HealthResponse(
            status=overall,
            storage=storage_status,
            redis=redis_status,
            live_connections=core.broadcaster.total_client_count(),
            timestamp=datetime.now(timezone.utc),
        )

    # =========================================================================
    # ACCOUNT ENDPOINTS
    # =========================================================================

    @app.post("/api/users", status_code=201, tags=["Accounts"], summary="Register Account")
    async def register_account(
        payload: AccountCreate,
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        """Create an account with an empty wallet and a referral code."""
        if payload.role == UserRole.ADMIN and not settings.is_development:
            raise HTTPException(status_code=403, detail="Admin accounts cannot be self-registered")
        try:
            account = await core.register_account(payload.phone, payload.name, payload.role)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return ok(account, status_code=201)

    # =========================================================================
    # ORDER API ENDPOINTS
    # =========================================================================

    @app.post(
        "/api/orders",
        status_code=201,
        responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        tags=["Orders"],
        summary="Place Order",
    )
    async def create_order(
        payload: OrderCreate,
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        """
        Place an order in RECEIVED status.

        The wallet share (if any) is debited immediately; an identical order
        submitted again within the duplicate window is rejected with 409.
        """
        result = await core.place_order(user.id, payload)
        return respond(result, status_code=201)

    @app.get("/api/orders", tags=["Orders"], summary="List Orders")
    async def list_orders(
        status: Optional[OrderStatus] = Query(None),
        order_type: Optional[OrderType] = Query(None),
        user_id: Optional[str] = Query(None, description="Admin only: filter by user"),
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        """Own orders for customers; every order (optionally filtered) for admins."""
        owner = user_id if user.role == UserRole.ADMIN else user.id
        orders, total = await core.orders.list_orders(
            user_id=owner, status=status, order_type=order_type, limit=limit, offset=offset
        )
        return ok({"orders": orders, "total": total, "limit": limit, "offset": offset})

    @app.get(
        "/api/orders/{reference}",
        responses={404: {"model": ErrorResponse}},
        tags=["Orders"],
        summary="Get Order",
    )
    async def get_order(
        reference: str,
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        """Get an order by canonical id or order code."""
        result = await core.get_order(reference)
        if result.success and user.role != UserRole.ADMIN and result.data.user_id != user.id:
            raise HTTPException(status_code=404, detail=f"Order {reference} not found")
        return respond(result)

    @app.patch(
        "/api/orders/{reference}/status",
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
        tags=["Orders"],
        summary="Update Order Status",
    )
    async def update_order_status(
        reference: str,
        payload: StatusUpdateRequest,
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        """
        Move an order to its next status.

        Admins may apply any allowed transition; customers may only cancel
        their own orders. Invalid transitions answer 400 with the allowed
        next statuses.
        """
        if user.role != UserRole.ADMIN:
            found = await core.get_order(reference)
            if not found.success or found.data.user_id != user.id:
                raise HTTPException(status_code=404, detail=f"Order {reference} not found")
            if payload.status != OrderStatus.CANCELLED:
                raise HTTPException(status_code=403, detail="Customers can only cancel orders")

        result = await core.apply_transition(reference, payload.status, user.id, payload.reason)
        return respond(result)

    @app.get(
        "/api/orders/{reference}/stream",
        responses={404: {"model": ErrorResponse}},
        tags=["Live Updates"],
        summary="Stream Order Status",
    )
    async def stream_order_status(
        reference: str,
        core: OrderingCore = Depends(get_ordering_core),
    ):
        """
        Server-Sent Events stream of an order's status.

        Sends the order snapshot, a connection confirmation, then every
        status update; heartbeats arrive as comment lines.
        """
        found = await core.get_order(reference)
        if not found.success:
            logger.warning(f"SSE connection attempt for non-existent order: {reference}")
            return respond(found)

        # Registered only once the body is being sent, so the finally below
        # always runs for a registered handle
        async def event_stream() -> AsyncIterator[str]:
            handle = QueueSubscriber(maxsize=settings.subscriber_queue_size, label=reference)
            subscribed = await core.subscribe(reference, handle)

            if not subscribed.success:
                logger.error(f"Failed to register SSE client for order {reference}: {subscribed.error_message}")
                yield format_sse(StreamEvent(payload=initial_envelope(found.data)))
                yield format_sse(StreamEvent(payload=error_envelope(subscribed.error_message)))
                return

            order = subscribed.data
            logger.info(f"SSE connection initiated for order {reference}")
            try:
                yield format_sse(StreamEvent(payload=initial_envelope(order)))
                yield format_sse(StreamEvent(payload=connected_envelope()))
                async for event in handle.events():
                    yield format_sse(event)
            finally:
                logger.info(f"SSE client disconnected from order {order.id}")
                handle.close()
                await core.unsubscribe(order.id, handle)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering
            },
        )

    @app.get("/api/sse/stats", tags=["Live Updates"], summary="Live Connection Statistics")
    async def sse_stats(
        _: Account = Depends(require_admin),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        return ok(core.broadcaster.stats())

    # =========================================================================
    # WALLET ENDPOINTS
    # =========================================================================

    @app.get("/api/wallet", tags=["Wallet"], summary="Wallet Balance")
    async def wallet_balance(
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        balance = await core.ledger.get_balance(user.id)
        return ok({"balance": balance, "currency": settings.currency})

    @app.get("/api/wallet/transactions", tags=["Wallet"], summary="Wallet Transactions")
    async def wallet_transactions(
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        type: Optional[TransactionType] = Query(None),
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        page = await core.ledger.list_transactions(user.id, limit=limit, offset=offset, type=type)
        return ok(page)

    @app.post(
        "/api/wallet/validate",
        responses={400: {"model": ErrorResponse}},
        tags=["Wallet"],
        summary="Validate Wallet Usage",
    )
    async def validate_wallet(
        payload: WalletValidateRequest,
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        result = await core.validate_wallet_usage(user.id, payload.amount, payload.order_total)
        return respond(result)

    @app.get("/api/wallet/referral/code", tags=["Referrals"], summary="My Referral Code")
    async def referral_code(
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        return ok(await core.referrals.get_user_referral_code(user.id))

    @app.post(
        "/api/wallet/referral/apply",
        responses={400: {"model": ErrorResponse}},
        tags=["Referrals"],
        summary="Apply Referral Code",
    )
    async def apply_referral(
        payload: ReferralApplyRequest,
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        return ok(await core.referrals.apply_referral_code(user.id, payload.referral_code))

    @app.get("/api/wallet/summary", tags=["Wallet"], summary="Wallet Summary")
    async def wallet_summary(
        user: Account = Depends(current_user),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        """Balance, referral details and the latest transactions in one call."""
        page = await core.ledger.list_transactions(user.id, limit=5)
        code = await core.referrals.get_user_referral_code(user.id)
        referred = await core.referrals.get_referred_users(user.id)
        return ok({
            "balance": page.balance,
            "currency": settings.currency,
            "referral": code,
            "referred_users": referred,
            "recent_transactions": page.transactions,
        })

    # =========================================================================
    # ADMIN ENDPOINTS
    # =========================================================================

    @app.post(
        "/api/admin/wallet/{user_id}/credit",
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
        tags=["Admin"],
        summary="Credit Wallet",
    )
    async def admin_credit(
        user_id: str,
        payload: WalletAdjustmentRequest,
        admin: Account = Depends(require_admin),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        result = await core.credit(
            user_id,
            payload.amount,
            TransactionReason.ADMIN_CREDIT,
            description=payload.description or "Admin credit",
            metadata={"admin_id": admin.id},
        )
        return respond(result)

    @app.post(
        "/api/admin/wallet/{user_id}/debit",
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
        tags=["Admin"],
        summary="Debit Wallet",
    )
    async def admin_debit(
        user_id: str,
        payload: WalletAdjustmentRequest,
        admin: Account = Depends(require_admin),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        result = await core.debit(
            user_id,
            payload.amount,
            TransactionReason.ADMIN_DEBIT,
            description=payload.description or "Admin debit",
            metadata={"admin_id": admin.id},
        )
        return respond(result)

    @app.get("/api/admin/stats", tags=["Admin"], summary="Wallet & Referral Statistics")
    async def admin_stats(
        _: Account = Depends(require_admin),
        core: OrderingCore = Depends(get_ordering_core),
    ) -> JSONResponse:
        return ok({
            "wallet": await core.ledger.get_wallet_stats(),
            "referrals": await core.referrals.get_referral_stats(),
            "live_connections": core.broadcaster.total_client_count(),
            "environment": settings.env_mode.value,
        })


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(OrderCoreError)
    async def order_core_exception_handler(request: Request, exc: OrderCoreError) -> JSONResponse:
        """Business-rule violations raised outside an OperationResult."""
        return JSONResponse(
            status_code=exc.http_status,
            content=OperationResult.fail(exc).to_dict(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all exception handler."""
        logger.exception(f"Unhandled exception: {exc}")

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal Server Error",
                "detail": str(exc) if settings.debug else "An unexpected error occurred",
            },
        )


app = create_app()


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "hungerwood.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
