"""
HTTP Server
===========
FastAPI binding for the order and payment handlers.

Authentication is handled upstream; the gateway in front of this service
forwards the caller identity in the X-User-Id and X-User-Role headers.

NO BUSINESS LOGIC - Routing, identity extraction and error mapping only.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import structlog
import uvicorn

from cache import CacheCoordinator, ResponseCache
from config import Config, get_config, validate_configuration
from db import DatabaseClient
from errors import AuthenticationError, OrderServiceError, ValidationError
from handlers import OrderService
from models import Page, Requester, Role
from notifications import AdminNotifier
from orders import OrderLifecycleEngine
from payments import PaymentWorkflowEngine


logger = structlog.get_logger(__name__)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

def configure_logging(level: str = "INFO"):
    """Configure stdlib logging and structlog once at startup."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ============================================================================
# WIRING
# ============================================================================

def build_service(config: Config) -> OrderService:
    """Assemble gateway, cache, notifier and engines from configuration."""
    gateway = DatabaseClient(settings=config.supabase)

    backend = CacheCoordinator.from_config(config.cache)
    cache = ResponseCache(
        backend,
        enabled=config.features.enable_cache,
        ttl=config.cache.ttl_short
    )

    notifier = AdminNotifier(
        settings=config.twilio,
        enabled=config.features.enable_admin_notifications
    )

    orders = OrderLifecycleEngine(
        gateway,
        default_page_size=config.api.default_page_size,
        max_page_size=config.api.max_page_size
    )
    payments = PaymentWorkflowEngine(
        gateway,
        default_page_size=config.api.default_page_size,
        max_page_size=config.api.max_page_size
    )

    return OrderService(orders, payments, cache, notifier)


async def _start_background(service: OrderService):
    backend = service.cache.backend
    if hasattr(backend, "start"):
        await backend.start()
    if service.notifier is not None and hasattr(service.notifier, "start"):
        await service.notifier.start()


async def _stop_background(service: OrderService):
    await service.drain_background()
    if service.notifier is not None and hasattr(service.notifier, "stop"):
        await service.notifier.stop()
    backend = service.cache.backend
    if hasattr(backend, "stop"):
        await backend.stop()


# ============================================================================
# REQUEST HELPERS
# ============================================================================

def get_requester(user_id: Optional[str], role: Optional[str]) -> Requester:
    """
    Build the requester from forwarded identity headers.

    Raises:
        AuthenticationError: Header missing or malformed
    """
    if not user_id or not role:
        raise AuthenticationError("missing X-User-Id or X-User-Role header")

    try:
        return Requester(id=int(user_id), role=Role.parse(role))
    except ValueError:
        raise AuthenticationError("malformed identity headers")


async def _read_json(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError({"payload": "must be valid JSON"})
    if not isinstance(payload, dict):
        raise ValidationError({"payload": "must be an object"})
    return payload


def _record(message: str, record) -> Dict[str, Any]:
    return {"message": message, "data": record.to_dict()}


def _page(message: str, page: Page) -> Dict[str, Any]:
    body = page.to_dict()
    body["message"] = message
    return body


def _records(message: str, records: List[Any]) -> Dict[str, Any]:
    return {"message": message, "data": [record.to_dict() for record in records]}


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app(
    service: Optional[OrderService] = None,
    cors_origins: Optional[List[str]] = None
) -> FastAPI:
    """
    Create the HTTP application.

    Args:
        service: Pre-built handlers (tests); built from environment
            configuration at startup when omitted
        cors_origins: Allowed CORS origins
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            config = get_config()
            validate_configuration()
            app.state.service = build_service(config)

        await _start_background(app.state.service)
        logger.info("server_started")
        yield
        logger.info("server_stopping")
        await _stop_background(app.state.service)

    app = FastAPI(title="Custom Order Service", lifespan=lifespan)
    app.state.service = service

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(OrderServiceError)
    async def domain_error_handler(request: Request, exc: OrderServiceError):
        if exc.status_code >= 500:
            logger.error(
                "request_failed",
                path=request.url.path,
                error=exc.message,
                details=exc.details
            )
        else:
            logger.info(
                "request_rejected",
                path=request.url.path,
                status=exc.status_code,
                error=exc.message
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def svc() -> OrderService:
        return app.state.service

    # ------------------------------------------------------------------------
    # OPERATIONS
    # ------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        health = svc().get_health()
        status_code = 200 if health["status"] == "healthy" else 503
        return JSONResponse(status_code=status_code, content=health)

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------------
    # CUSTOM ORDERS
    # ------------------------------------------------------------------------

    @app.post("/custom-orders", status_code=201)
    async def create_order(
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        order = await svc().create_order(requester, await _read_json(request))
        return _record("Custom order created", order)

    @app.get("/custom-orders")
    async def list_orders(
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        page = await svc().list_orders(requester, dict(request.query_params))
        return _page("Custom orders retrieved", page)

    @app.get("/custom-orders/{order_id}")
    async def get_order(
        order_id: int,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        order = await svc().get_order(get_requester(x_user_id, x_user_role), order_id)
        return _record("Custom order retrieved", order)

    @app.patch("/custom-orders/{order_id}")
    async def update_order(
        order_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        order = await svc().update_order(requester, order_id, await _read_json(request))
        return _record("Custom order updated", order)

    @app.delete("/custom-orders/{order_id}")
    async def hard_delete_order(
        order_id: int,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        order = await svc().hard_delete_order(get_requester(x_user_id, x_user_role), order_id)
        return _record("Custom order deleted", order)

    @app.patch("/custom-orders/{order_id}/soft-delete")
    async def soft_delete_order(
        order_id: int,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        order = await svc().soft_delete_order(get_requester(x_user_id, x_user_role), order_id)
        return _record("Custom order deleted", order)

    @app.patch("/custom-orders/{order_id}/accept")
    async def accept_order(
        order_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        order = await svc().accept_order(requester, order_id, await _read_json(request))
        return _record("Custom order accepted", order)

    @app.patch("/custom-orders/{order_id}/reject")
    async def reject_order(
        order_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        order = await svc().reject_order(requester, order_id, await _read_json(request))
        return _record("Custom order rejected", order)

    @app.patch("/custom-orders/{order_id}/deal-negosiasi")
    async def deal_order(
        order_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        order = await svc().deal_order(requester, order_id, await _read_json(request))
        return _record("Negotiation deal recorded", order)

    @app.patch("/custom-orders/{order_id}/cancel")
    async def cancel_order(
        order_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        order = await svc().cancel_order(requester, order_id, await _read_json(request))
        return _record("Custom order cancelled", order)

    @app.get("/custom-orders/{order_id}/transactions")
    async def list_order_transactions(
        order_id: int,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        transactions = await svc().list_order_transactions(get_requester(x_user_id, x_user_role), order_id)
        return _records("Order transactions retrieved", transactions)

    # ------------------------------------------------------------------------
    # TRANSACTIONS
    # ------------------------------------------------------------------------

    @app.post("/transactions", status_code=201)
    async def create_transaction(
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        transaction = await svc().create_transaction(requester, await _read_json(request))
        return _record("Transaction created", transaction)

    @app.get("/transactions")
    async def list_transactions(
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        page = await svc().list_transactions(requester, dict(request.query_params))
        return _page("Transactions retrieved", page)

    @app.get("/transactions/{transaction_id}")
    async def get_transaction(
        transaction_id: int,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        transaction = await svc().get_transaction(get_requester(x_user_id, x_user_role), transaction_id)
        return _record("Transaction retrieved", transaction)

    @app.patch("/transactions/{transaction_id}")
    async def update_transaction(
        transaction_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        transaction = await svc().update_transaction(
            requester, transaction_id, await _read_json(request)
        )
        return _record("Transaction updated", transaction)

    @app.delete("/transactions/{transaction_id}")
    async def hard_delete_transaction(
        transaction_id: int,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        transaction = await svc().hard_delete_transaction(get_requester(x_user_id, x_user_role), transaction_id)
        return _record("Transaction deleted", transaction)

    @app.patch("/transactions/{transaction_id}/soft-delete")
    async def soft_delete_transaction(
        transaction_id: int,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        transaction = await svc().soft_delete_transaction(get_requester(x_user_id, x_user_role), transaction_id)
        return _record("Transaction deleted", transaction)

    @app.patch("/transactions/{transaction_id}/bayar")
    async def submit_payment(
        transaction_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        transaction = await svc().submit_payment(
            requester, transaction_id, await _read_json(request)
        )
        return _record("Payment submitted, awaiting confirmation", transaction)

    @app.patch("/transactions/{transaction_id}/terima-pembayaran")
    async def accept_payment(
        transaction_id: int,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        transaction = await svc().accept_payment(get_requester(x_user_id, x_user_role), transaction_id)
        return _record("Payment accepted", transaction)

    @app.patch("/transactions/{transaction_id}/tolak-pembayaran")
    async def reject_payment(
        transaction_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        transaction = await svc().reject_payment(
            requester, transaction_id, await _read_json(request)
        )
        return _record("Payment rejected", transaction)

    @app.patch("/transactions/{transaction_id}/resend-pembayaran")
    async def resend_payment(
        transaction_id: int,
        request: Request,
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None)
    ):
        requester = get_requester(x_user_id, x_user_role)
        transaction = await svc().resend_payment(
            requester, transaction_id, await _read_json(request)
        )
        return _record("Payment resent, awaiting confirmation", transaction)

    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the HTTP server."""
    config = get_config()
    configure_logging(config.server.log_level)

    logger.info("server_starting", host=config.server.host, port=config.server.port)

    uvicorn.run(
        create_app(cors_origins=config.server.cors_origins),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
