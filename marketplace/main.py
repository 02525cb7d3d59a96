"""
Marketplace Orders
FastAPI application entry point

- Order expiration scheduler started/stopped with the app lifespan
- Rate limiting with SlowAPI
- Domain errors rendered from the exception catalog
- Error sanitization middleware
- Health endpoint with DB ping and sweeper heartbeat
- Request metrics collection
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.responses import JSONResponse, Response

from marketplace.api.deps import get_order_service
from marketplace.api.routes import inventory, orders, payments
from marketplace.core.config import settings
from marketplace.core.database import engine, init_models
from marketplace.core.error_handler import ErrorSanitizationMiddleware, marketplace_error_handler
from marketplace.core.exceptions import MarketplaceError
from marketplace.core.monitoring import RequestMetricsMiddleware, get_prometheus_metrics, metrics
from marketplace.core.rate_limit import limiter, rate_limit_exceeded_handler
from marketplace.jobs.order_expiration import order_expiration_scheduler
from marketplace.services.order_service import OrderService

logging.getLogger("marketplace").setLevel(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables (development only) and run the expiration sweeper."""
    if settings.AUTO_CREATE_TABLES:
        await init_models(engine)
        logger.info("Database tables created")

    if settings.ORDER_SWEEP_ENABLED:
        await order_expiration_scheduler.start()
        logger.info("Order expiration scheduler ENABLED")
    else:
        logger.info("Order expiration scheduler DISABLED via config")

    yield

    await order_expiration_scheduler.stop()
    await engine.dispose()


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="""
## Marketplace Orders API

Order reservation and expiration for the marketplace.

### Flow
- **Checkout** reserves stock and creates a PENDING order with a payment deadline
- **Payment confirmation** marks the order PAID; stock stays reserved
- **Cancellation** or **expiry** returns the reserved stock to the ledger

### Rate Limits
- Checkout: 10 requests/minute
- General: 100 requests/minute
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check and monitoring endpoints"},
        {"name": "Orders", "description": "Checkout, cancellation and order reads"},
        {"name": "Payments", "description": "Payment collaborator contract"},
        {"name": "Inventory", "description": "Inventory ledger reads and restock"},
    ],
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Domain errors
app.add_exception_handler(MarketplaceError, marketplace_error_handler)

# Request metrics collection
app.add_middleware(RequestMetricsMiddleware)

# Error sanitization (catches unhandled exceptions)
app.add_middleware(ErrorSanitizationMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(inventory.router, prefix="/api/inventory", tags=["Inventory"])


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": settings.APP_NAME,
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health", tags=["Health"])
async def health_check(service: OrderService = Depends(get_order_service)):
    """
    Health check with an actual DB ping and the sweeper heartbeat.
    Returns 503 if the database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "order_sweeper": order_expiration_scheduler.heartbeat,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with service.session_factory() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check database ping failed: {e}")
        health_status["database"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status


async def _record_reservation_gauges(service: OrderService) -> None:
    stats = await service.get_reservation_stats()
    metrics.gauge("orders_pending", stats["pending_orders"])
    metrics.gauge("orders_awaiting_sweep", stats["awaiting_sweep"])
    metrics.gauge("units_reserved", stats["units_held"])


@app.get("/metrics", tags=["Health"])
async def prometheus_metrics(service: OrderService = Depends(get_order_service)):
    """Prometheus-compatible metrics endpoint."""
    await _record_reservation_gauges(service)
    return Response(
        content=get_prometheus_metrics(),
        media_type="text/plain; charset=utf-8"
    )


@app.get("/metrics/json", tags=["Health"])
async def json_metrics(service: OrderService = Depends(get_order_service)):
    """All collected metrics as JSON, for dashboards."""
    await _record_reservation_gauges(service)
    return metrics.get_all_metrics()
