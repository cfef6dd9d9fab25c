"""
Request Handlers (Orchestration Layer)
======================================
Request/response contracts on top of the order and payment engines.

This layer:
- Applies role checks (admin-only actions, owner-or-admin reads)
- Reads through the cache and invalidates it after every mutation
- Fires the admin notification after an order is stored
- Writes the audit trail

Engines never see the cache or the notifier; failures of either are
logged here and never fail an operation that succeeded in the gateway.
"""

import asyncio
import inspect
from typing import Dict, Any, List, Mapping, Optional, Set

import structlog

from cache import CacheKeys, ResponseCache
from errors import DependencyError, ForbiddenError, NotFoundError, ValidationError
from models import CustomOrder, Page, Requester, Transaction
from orders import OrderLifecycleEngine
from payments import PaymentWorkflowEngine
from validation import parse_order_list_params, parse_transaction_list_params


logger = structlog.get_logger(__name__)
audit_logger = structlog.get_logger("audit")


def _audit(action: str, requester: Requester, **context):
    audit_logger.info(
        "audit",
        action=action,
        actor_id=requester.id,
        actor_role=requester.role.value,
        **context
    )


def _require_admin(requester: Requester, action: str):
    if not requester.is_elevated:
        logger.warning("admin_action_denied", action=action, requester_id=requester.id)
        raise ForbiddenError(f"{action} requires an admin identity")


def _require_visible(requester: Requester, record, resource: str):
    """Owner-or-admin read; customers never see soft-deleted rows."""
    if requester.is_elevated:
        return
    if record.is_deleted:
        raise NotFoundError(resource, record.id)
    if record.user_id != requester.id:
        raise ForbiddenError(f"{resource} {record.id} belongs to another customer")


class OrderService:
    """
    Entry point for every order and payment request.

    Args:
        orders: Order lifecycle engine
        payments: Payment workflow engine
        cache: Failure-tolerant cache wrapper
        notifier: Object with notify_order_created(order_id, order_token)
    """

    def __init__(
        self,
        orders: OrderLifecycleEngine,
        payments: PaymentWorkflowEngine,
        cache: ResponseCache,
        notifier=None
    ):
        self.orders = orders
        self.payments = payments
        self.cache = cache
        self.notifier = notifier
        self._background: Set[asyncio.Task] = set()

    # ========================================================================
    # NOTIFICATION (fire-and-forget)
    # ========================================================================

    def _notify_order_created(self, order: CustomOrder):
        if self.notifier is None:
            return

        try:
            result = self.notifier.notify_order_created(order.id, order.unique_id)
        except Exception as e:
            logger.error("admin_notification_failed", order_id=order.id, error=str(e))
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("admin_notification_failed", error=str(error))

    async def drain_background(self):
        """Wait for outstanding notification tasks (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ========================================================================
    # CACHE HELPERS
    # ========================================================================

    async def _invalidate_everything_for_order(self, order_id: int):
        """Owner unknown after a failed two-write operation; drop whole groups."""
        await self.cache.invalidate(
            keys=[CacheKeys.order(order_id), CacheKeys.transactions_order(order_id)],
            patterns=["custom_orders:", "transactions:"]
        )

    async def _cached_order(self, order_id: int) -> CustomOrder:
        return await self.cache.read_through(
            CacheKeys.order(order_id),
            lambda: self.orders.get_by_id(order_id, include_deleted=True),
            encode=lambda order: order.to_dict(),
            decode=CustomOrder.from_row
        )

    async def _cached_transaction(self, transaction_id: int) -> Transaction:
        return await self.cache.read_through(
            CacheKeys.transaction(transaction_id),
            lambda: self.payments.get_by_id(transaction_id, include_deleted=True),
            encode=lambda transaction: transaction.to_dict(),
            decode=Transaction.from_row
        )

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def create_order(self, requester: Requester, payload: Mapping[str, Any]) -> CustomOrder:
        """Customers always create for themselves; admins may name the customer."""
        data = dict(payload or {})
        if not requester.is_elevated or data.get("user_id") is None:
            data["user_id"] = requester.id

        order = await self.orders.create(data)

        await self.cache.invalidate_order(order.id, order.user_id)
        self._notify_order_created(order)
        _audit(
            "CUSTOM_ORDER_CREATED",
            requester,
            order_id=order.id,
            unique_id=order.unique_id,
            user_id=order.user_id
        )
        return order

    async def get_order(self, requester: Requester, order_id: int) -> CustomOrder:
        order = await self._cached_order(order_id)
        _require_visible(requester, order, "custom_order")
        return order

    async def list_orders(self, requester: Requester, params: Optional[Mapping[str, Any]] = None) -> Page:
        query = parse_order_list_params(
            params,
            default_limit=self.orders.default_page_size,
            max_limit=self.orders.max_page_size
        ).scoped_to(requester)

        if requester.is_elevated:
            key = CacheKeys.orders_all(query.cache_fragment())
        else:
            key = CacheKeys.orders_user(requester.id, query.cache_fragment())

        return await self.cache.read_through(
            key,
            lambda: self.orders.list(requester, query),
            encode=lambda page: page.to_dict(),
            decode=lambda data: Page.from_dict(data, CustomOrder)
        )

    async def update_order(self, requester: Requester, order_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        _require_admin(requester, "update custom order")
        order = await self.orders.update(order_id, payload)

        await self.cache.invalidate_order(order.id, order.user_id)
        _audit("CUSTOM_ORDER_UPDATED", requester, order_id=order.id, fields=sorted(payload))
        return order

    async def accept_order(self, requester: Requester, order_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        _require_admin(requester, "accept custom order")
        order = await self.orders.accept(order_id, requester.id, payload)

        await self.cache.invalidate_order(order.id, order.user_id)
        _audit("CUSTOM_ORDER_ACCEPTED", requester, order_id=order.id)
        return order

    async def reject_order(self, requester: Requester, order_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        _require_admin(requester, "reject custom order")
        order = await self.orders.reject(order_id, requester.id, payload)

        await self.cache.invalidate_order(order.id, order.user_id)
        _audit(
            "CUSTOM_ORDER_REJECTED",
            requester,
            order_id=order.id,
            reason=order.alasan_ditolak
        )
        return order

    async def deal_order(self, requester: Requester, order_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        _require_admin(requester, "deal custom order")

        try:
            order = await self.orders.deal(order_id, requester.id, payload)
        except (DependencyError, ValidationError):
            await self._invalidate_everything_for_order(order_id)
            raise

        await self.cache.invalidate_order(order.id, order.user_id)
        await self.cache.invalidate_transaction(None, order.user_id, order_id=order.id)
        _audit(
            "CUSTOM_ORDER_NEGOTIATION_DEAL",
            requester,
            order_id=order.id,
            total_harga=str(order.total_harga)
        )
        return order

    async def cancel_order(self, requester: Requester, order_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        _require_admin(requester, "cancel custom order")
        order = await self.orders.cancel(order_id, requester.id, payload)

        await self.cache.invalidate_order(order.id, order.user_id)
        _audit("CUSTOM_ORDER_CANCELLED", requester, order_id=order.id)
        return order

    async def soft_delete_order(self, requester: Requester, order_id: int) -> CustomOrder:
        _require_admin(requester, "delete custom order")
        order = await self.orders.soft_delete(order_id)

        await self.cache.invalidate_order(order.id, order.user_id)
        _audit("CUSTOM_ORDER_SOFT_DELETED", requester, order_id=order.id)
        return order

    async def hard_delete_order(self, requester: Requester, order_id: int) -> CustomOrder:
        _require_admin(requester, "delete custom order")
        order = await self.orders.hard_delete(order_id)

        await self.cache.invalidate_order(order.id, order.user_id)
        await self.cache.invalidate([CacheKeys.transactions_order(order.id)])
        _audit("CUSTOM_ORDER_DELETED", requester, order_id=order.id)
        return order

    async def list_order_transactions(self, requester: Requester, order_id: int) -> List[Transaction]:
        """Transactions spawned by an order the requester may see."""
        await self.get_order(requester, order_id)

        return await self.cache.read_through(
            CacheKeys.transactions_order(order_id),
            lambda: self.payments.list_for_order(order_id),
            encode=lambda items: [t.to_dict() for t in items],
            decode=lambda rows: [Transaction.from_row(row) for row in rows]
        )

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    async def _after_transaction_write(self, transaction: Transaction):
        await self.cache.invalidate_transaction(
            transaction.id,
            transaction.user_id,
            order_id=transaction.custom_order_id
        )

    async def create_transaction(self, requester: Requester, payload: Mapping[str, Any]) -> Transaction:
        _require_admin(requester, "create transaction")
        transaction = await self.payments.create(payload)

        await self._after_transaction_write(transaction)
        _audit(
            "TRANSACTION_CREATED",
            requester,
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            total_harga=str(transaction.total_harga)
        )
        return transaction

    async def get_transaction(self, requester: Requester, transaction_id: int) -> Transaction:
        transaction = await self._cached_transaction(transaction_id)
        _require_visible(requester, transaction, "transaction")
        return transaction

    async def list_transactions(self, requester: Requester, params: Optional[Mapping[str, Any]] = None) -> Page:
        query = parse_transaction_list_params(
            params,
            default_limit=self.payments.default_page_size,
            max_limit=self.payments.max_page_size
        ).scoped_to(requester)

        if requester.is_elevated:
            key = CacheKeys.transactions_all(query.cache_fragment())
        else:
            key = CacheKeys.transactions_user(requester.id, query.cache_fragment())

        return await self.cache.read_through(
            key,
            lambda: self.payments.list(requester, query),
            encode=lambda page: page.to_dict(),
            decode=lambda data: Page.from_dict(data, Transaction)
        )

    async def update_transaction(
        self,
        requester: Requester,
        transaction_id: int,
        payload: Mapping[str, Any]
    ) -> Transaction:
        _require_admin(requester, "update transaction")
        transaction = await self.payments.update(transaction_id, payload)

        await self._after_transaction_write(transaction)
        _audit("TRANSACTION_UPDATED", requester, transaction_id=transaction.id, fields=sorted(payload))
        return transaction

    async def submit_payment(
        self,
        requester: Requester,
        transaction_id: int,
        payload: Mapping[str, Any]
    ) -> Transaction:
        transaction = await self.payments.submit_payment(transaction_id, payload, requester.id)

        await self._after_transaction_write(transaction)
        _audit(
            "PAYMENT_SUBMITTED",
            requester,
            transaction_id=transaction.id,
            payment_method=transaction.payment_method.value if transaction.payment_method else None
        )
        return transaction

    async def resend_payment(
        self,
        requester: Requester,
        transaction_id: int,
        payload: Mapping[str, Any]
    ) -> Transaction:
        transaction = await self.payments.resend_payment(transaction_id, payload, requester.id)

        await self._after_transaction_write(transaction)
        _audit("PAYMENT_RESENT", requester, transaction_id=transaction.id)
        return transaction

    async def accept_payment(self, requester: Requester, transaction_id: int) -> Transaction:
        _require_admin(requester, "accept payment")

        try:
            transaction = await self.payments.accept_payment(transaction_id, requester.id)
        except DependencyError as e:
            order_id = e.details.get("order_id")
            await self.cache.invalidate(
                keys=[CacheKeys.transaction(transaction_id)],
                patterns=["transactions:", "custom_orders:"]
            )
            if order_id is not None:
                await self.cache.invalidate([CacheKeys.order(order_id)])
            raise

        await self._after_transaction_write(transaction)
        if transaction.custom_order_id is not None:
            await self.cache.invalidate_order(transaction.custom_order_id, transaction.user_id)

        _audit(
            "PAYMENT_ACCEPTED",
            requester,
            transaction_id=transaction.id,
            order_id=transaction.custom_order_id
        )
        return transaction

    async def reject_payment(
        self,
        requester: Requester,
        transaction_id: int,
        payload: Mapping[str, Any]
    ) -> Transaction:
        _require_admin(requester, "reject payment")
        transaction = await self.payments.reject_payment(transaction_id, requester.id, payload)

        await self._after_transaction_write(transaction)
        _audit(
            "PAYMENT_REJECTED",
            requester,
            transaction_id=transaction.id,
            reason=transaction.alasan_ditolak
        )
        return transaction

    async def soft_delete_transaction(self, requester: Requester, transaction_id: int) -> Transaction:
        _require_admin(requester, "delete transaction")
        transaction = await self.payments.soft_delete(transaction_id)

        await self._after_transaction_write(transaction)
        _audit("TRANSACTION_SOFT_DELETED", requester, transaction_id=transaction.id)
        return transaction

    async def hard_delete_transaction(self, requester: Requester, transaction_id: int) -> Transaction:
        _require_admin(requester, "delete transaction")
        transaction = await self.payments.hard_delete(transaction_id)

        await self._after_transaction_write(transaction)
        _audit("TRANSACTION_DELETED", requester, transaction_id=transaction.id)
        return transaction

    # ========================================================================
    # HEALTH
    # ========================================================================

    def get_health(self) -> Dict[str, Any]:
        """Component health for /health."""
        gateway = self.orders.gateway
        components = {
            "database": gateway.is_healthy() if hasattr(gateway, "is_healthy") else True,
            "cache": (
                self.cache.backend.is_healthy()
                if hasattr(self.cache.backend, "is_healthy") else True
            ),
            "notifications": (
                self.notifier.is_healthy()
                if self.notifier is not None and hasattr(self.notifier, "is_healthy") else True
            ),
        }
        stats = {"cache_failures": self.cache.failure_count}
        for name, component in (
            ("database", gateway),
            ("cache", self.cache.backend),
            ("notifications", self.notifier),
        ):
            if component is not None and hasattr(component, "get_stats"):
                stats[name] = component.get_stats()

        return {
            "status": "healthy" if all(components.values()) else "degraded",
            "components": components,
            "stats": stats,
        }
