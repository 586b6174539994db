"""
Storefront API Server
=====================
FastAPI surface over the order lifecycle and payment reconciliation core:
- Orders: create, list, read, cancel
- Payment webhook (x-callback-token) and invoice creation
- Cart, admin order listing and the admin notification feed
- Health monitoring

pip install fastapi uvicorn pydantic structlog asyncpg redis aio-pika httpx
"""

import os
import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.dependencies import Container, build_production_container, get_caller, get_container
from logging_setup import configure_logging
from schemas.domain import Caller, OrderStatus, utcnow
from schemas.requests import CartUpdateRequest, InvoiceRequest, OrderActionRequest, OrderDraft
from services.errors import ServiceError, ValidationError

logger = structlog.get_logger(component="server")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    VERSION = "1.0.0"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


config = ServerConfig()


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    database_connected: bool
    event_bus_connected: bool
    notifications_in_flight: int


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    Build the application. Without a container the production wiring is
    created at startup; tests pass an in-memory one.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("server_starting", version=config.VERSION, env=config.ENV)
        if app.state.container is None:
            app.state.container = build_production_container()
        await app.state.container.start()
        app.state.started_at = utcnow()

        yield

        logger.info("server_shutting_down")
        await app.state.container.stop()

    app = FastAPI(
        title="Storefront Orders",
        description="Order lifecycle and payment reconciliation",
        version=config.VERSION,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.started_at = utcnow()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_error_handlers(app)
    register_routes(app)
    return app


# =============================================================================
# MIDDLEWARE
# =============================================================================

def register_middleware(app: FastAPI):

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def register_error_handlers(app: FastAPI):

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field_path = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid {field_path}: {first.get('msg')}" if field_path else "Invalid request"
        return JSONResponse(status_code=400, content={"message": message})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})


# =============================================================================
# ROUTES
# =============================================================================

def register_routes(app: FastAPI):

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        container = get_container(request)
        uptime = (utcnow() - request.app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=config.VERSION,
            uptime_seconds=uptime,
            database_connected=container.db.is_connected if container.db else True,
            event_bus_connected=await container.bus.health_check(),
            notifications_in_flight=container.notifications.in_flight,
        )

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    @app.post("/order", status_code=201)
    async def create_order(
        draft: OrderDraft,
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        order = await container.order_service.create(caller, draft)
        return order.to_json()

    @app.get("/order")
    async def list_orders(
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        orders = await container.order_service.list(caller)
        return [o.to_json() for o in orders]

    @app.get("/order/{order_id}")
    async def get_order(
        order_id: str,
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        order = await container.order_service.get(caller, order_id)
        return order.to_json()

    @app.patch("/order/{order_id}")
    async def update_order(
        order_id: str,
        body: OrderActionRequest,
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        if (body.action or "").lower() != "cancel":
            raise ValidationError("Unsupported action")
        order = await container.order_service.cancel(caller, order_id)
        return {"message": "Order cancelled successfully", "order": order.to_json()}

    @app.get("/admin/orders")
    async def admin_list_orders(
        status: Optional[str] = None,
        page: int = Query(default=1),
        limit: int = Query(default=20),
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        status_filter = None
        if status:
            try:
                status_filter = OrderStatus(status.lower())
            except ValueError:
                raise ValidationError(f"Unknown status: {status}")

        orders, total = await container.order_service.list_all(
            caller, status=status_filter, page=page, limit=limit,
        )
        return {
            "orders": [o.to_json() for o in orders],
            "total": total,
            "page": page,
            "limit": limit,
        }

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    @app.post("/webhooks/payment")
    async def payment_webhook(
        request: Request,
        x_callback_token: Optional[str] = Header(default=None),
        container: Container = Depends(get_container),
    ):
        """
        Provider callback. Any 2xx tells the provider to stop retrying, so
        only real failures map to an error status.
        """
        container.webhooks.authenticate(x_callback_token)
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("Invalid payload")

        result = await container.webhooks.process(payload, x_callback_token)
        return {"message": result.message}

    @app.post("/payments/invoice")
    async def create_invoice(
        body: InvoiceRequest,
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        result = await container.invoices.create_invoice(
            caller, body.order_id, body.customer_name, body.customer_email,
        )
        return result.to_json()

    # -------------------------------------------------------------------------
    # Cart
    # -------------------------------------------------------------------------

    @app.get("/cart")
    async def get_cart(
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        cart = await container.cart_service.get(caller)
        return cart.to_json()

    @app.post("/cart")
    async def save_cart(
        body: CartUpdateRequest,
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        cart = await container.cart_service.replace(caller, body.items)
        return cart.to_json()

    # -------------------------------------------------------------------------
    # Admin notifications
    # -------------------------------------------------------------------------

    @app.get("/admin/notifications")
    async def list_notifications(
        limit: int = Query(default=50),
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        notifications = await container.notification_center.list_recent(caller, limit=limit)
        return {"notifications": [n.to_json() for n in notifications]}

    @app.patch("/admin/notifications/{notification_id}/read")
    async def mark_notification_read(
        notification_id: str,
        caller: Caller = Depends(get_caller),
        container: Container = Depends(get_container),
    ):
        notification = await container.notification_center.mark_read(caller, notification_id)
        return {"notification": notification.to_json()}


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
