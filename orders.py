"""
Order Lifecycle Engine
======================
Custom order creation, negotiation and fulfillment.

Every status change is validated against OrderStateMachine first and then
written as a compare-and-swap on the prior status, so a concurrent admin
action that already moved the order makes this one fail with
ConflictError instead of silently overwriting it.

The deal transition spans two writes (order, then transaction). If the
transaction write fails, the order write is rolled back and the caller
gets a DependencyError saying whether the rollback worked.
"""

from typing import Dict, Any, Optional, Mapping, Union

import structlog

from errors import ConflictError, DependencyError, NotFoundError, OrderServiceError, ValidationError
from models import (
    CustomOrder,
    ListQuery,
    OrderStatus,
    Page,
    PaymentStatus,
    Requester,
    Transaction,
    new_token,
    utcnow,
)
from order_state import OrderStateMachine, saga_compensations_total
from validation import (
    normalize_sourcing,
    parse_order_list_params,
    validate_accept,
    validate_cancel,
    validate_deal,
    validate_order_create,
    validate_order_update,
    validate_reject,
)


logger = structlog.get_logger(__name__)

ORDER_TOKEN_PREFIX = "CSO"
TRANSACTION_TOKEN_PREFIX = "TRX"

# Fields whose consistency is governed by the sourcing branches
_SOURCING_FIELDS = (
    "material_sendiri",
    "material_id",
    "referensi_custom",
    "file_referensi_custom",
    "model_baju_id",
)


class OrderLifecycleEngine:
    """
    Owns custom order state.

    Args:
        gateway: Persistence gateway (see db.DatabaseClient)
        default_page_size: Page size when a list request names none
        max_page_size: Upper bound applied to list requests
    """

    def __init__(self, gateway, default_page_size: int = 25, max_page_size: int = 100):
        self.gateway = gateway
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # ========================================================================
    # INTERNALS
    # ========================================================================

    async def _load(self, order_id: int, include_deleted: bool = False) -> CustomOrder:
        row = await self.gateway.fetch_order(order_id)
        if row is None:
            raise NotFoundError("custom_order", order_id)

        order = CustomOrder.from_row(row)
        if order.is_deleted and not include_deleted:
            raise NotFoundError("custom_order", order_id)
        return order

    async def _raise_lost_race(self, order_id: int, target: OrderStatus):
        """A conditional update matched nothing: report why."""
        row = await self.gateway.fetch_order(order_id)
        if row is None:
            raise NotFoundError("custom_order", order_id)

        current = str(row.get("status"))
        logger.warning(
            "custom_order_concurrent_change",
            order_id=order_id,
            current_state=current,
            target_state=target.value
        )
        raise ConflictError(
            f"custom order {order_id} was modified concurrently (now {current})",
            current_state=current,
            target_state=target.value
        )

    async def _transition(
        self,
        order: CustomOrder,
        target: OrderStatus,
        fields: Dict[str, Any]
    ) -> CustomOrder:
        OrderStateMachine.ensure(order.status, target, order.id)

        changes = dict(fields)
        changes["status"] = target.value
        changes["updated_at"] = utcnow()

        row = await self.gateway.update_order(
            order.id,
            changes,
            expected_status=order.status.value
        )
        if row is None:
            await self._raise_lost_race(order.id, target)

        OrderStateMachine.record(order.status, target, order.id)
        return CustomOrder.from_row(row)

    # ========================================================================
    # CREATE / UPDATE
    # ========================================================================

    async def create(self, payload: Mapping[str, Any]) -> CustomOrder:
        """
        Create a custom order in PENDING.

        Raises:
            ValidationError: Listing every violated field
        """
        data = validate_order_create(payload)

        now = utcnow()
        row = dict(data)
        row.update({
            "unique_id": new_token(ORDER_TOKEN_PREFIX),
            "status": OrderStatus.PENDING.value,
            "created_at": now,
            "updated_at": now,
        })

        stored = CustomOrder.from_row(await self.gateway.insert_order(row))

        logger.info(
            "custom_order_created",
            order_id=stored.id,
            unique_id=stored.unique_id,
            user_id=stored.user_id
        )
        return stored

    async def update(self, order_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        """
        Partial update of descriptive fields and price.

        The merged record must still satisfy the sourcing invariants; the
        branch-deselected fields are cleared.
        """
        changes = validate_order_update(payload)
        order = await self._load(order_id)

        merged = {name: getattr(order, name) for name in _SOURCING_FIELDS}
        merged.update({k: v for k, v in changes.items() if k in _SOURCING_FIELDS})
        problems = normalize_sourcing(merged)
        if problems:
            raise ValidationError(problems)

        fields = dict(changes)
        fields.update(merged)
        fields["updated_at"] = utcnow()

        row = await self.gateway.update_order(order.id, fields)
        if row is None:
            raise NotFoundError("custom_order", order_id)

        logger.info("custom_order_updated", order_id=order_id, fields=sorted(changes))
        return CustomOrder.from_row(row)

    # ========================================================================
    # ADMIN ACTIONS
    # ========================================================================

    async def accept(self, order_id: int, admin_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        """PENDING -> NEGOSIASI."""
        validate_accept(payload)
        order = await self._load(order_id)

        updated = await self._transition(order, OrderStatus.NEGOSIASI, {
            "admin_id": admin_id,
            "diterima_pada": utcnow(),
        })

        logger.info("custom_order_accepted", order_id=order_id, admin_id=admin_id)
        return updated

    async def reject(self, order_id: int, admin_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        """PENDING -> DITOLAK with a reason."""
        reason = validate_reject(payload)
        order = await self._load(order_id)

        updated = await self._transition(order, OrderStatus.DITOLAK, {
            "admin_id": admin_id,
            "ditolak_pada": utcnow(),
            "alasan_ditolak": reason,
        })

        logger.info("custom_order_rejected", order_id=order_id, admin_id=admin_id)
        return updated

    async def cancel(self, order_id: int, admin_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        """Any non-terminal state -> DIBATALKAN."""
        reason = validate_cancel(payload)
        order = await self._load(order_id)

        fields: Dict[str, Any] = {"admin_id": order.admin_id or admin_id}
        if reason is not None:
            fields["alasan_ditolak"] = reason

        updated = await self._transition(order, OrderStatus.DIBATALKAN, fields)

        logger.info(
            "custom_order_cancelled",
            order_id=order_id,
            admin_id=admin_id,
            from_state=order.status.value
        )
        return updated

    async def deal(self, order_id: int, admin_id: int, payload: Mapping[str, Any]) -> CustomOrder:
        """
        NEGOSIASI -> PENGERJAAN and open the order's transaction.

        Raises:
            ValidationError: Bad contract, non-positive price, or the database
                refused the transaction row (the order is restored first)
            ConflictError: Order not in NEGOSIASI
            DependencyError: Transaction write failed; `compensated` tells
                whether the order was restored to NEGOSIASI
        """
        price = validate_deal(payload)
        order = await self._load(order_id)

        updated = await self._transition(order, OrderStatus.PENGERJAAN, {
            "total_harga": price,
            "admin_id": admin_id,
        })

        try:
            transaction = await self._ensure_transaction(updated)
        except OrderServiceError as e:
            compensated = await self._compensate_deal(order, updated)
            if not isinstance(e, DependencyError):
                # Refused by the database as bad data; the order is restored
                raise
            raise DependencyError(
                f"deal for custom order {order_id} failed creating its transaction",
                operation="deal",
                compensated=compensated,
                details={"order_id": order_id, "cause": e.message}
            )

        logger.info(
            "custom_order_deal",
            order_id=order_id,
            admin_id=admin_id,
            total_harga=str(price),
            transaction_id=transaction.id
        )
        return updated

    async def _ensure_transaction(self, order: CustomOrder) -> Transaction:
        """
        Open the order's transaction, reusing one a previous attempt left.

        Soft-deleted rows are never reused. A live unpaid row is brought in
        line with the negotiated price and admin.
        """
        existing = [
            Transaction.from_row(row)
            for row in await self.gateway.find_transactions_for_order(order.id)
        ]
        live = [t for t in existing if not t.is_deleted]

        if live:
            transaction = live[0]
            if transaction.status == PaymentStatus.BELUM_BAYAR and (
                transaction.total_harga != order.total_harga
                or transaction.admin_id != order.admin_id
            ):
                row = await self.gateway.update_transaction(
                    transaction.id,
                    {
                        "total_harga": order.total_harga,
                        "admin_id": order.admin_id,
                        "updated_at": utcnow(),
                    },
                    expected_status=PaymentStatus.BELUM_BAYAR.value
                )
                if row is None:
                    raise DependencyError(
                        f"transaction {transaction.id} changed while being reused",
                        operation="reuse_transaction"
                    )
                transaction = Transaction.from_row(row)

            logger.info(
                "deal_transaction_reused",
                order_id=order.id,
                transaction_id=transaction.id
            )
            return transaction

        now = utcnow()
        row = await self.gateway.insert_transaction({
            "unique_id": new_token(TRANSACTION_TOKEN_PREFIX),
            "user_id": order.user_id,
            "admin_id": order.admin_id,
            "custom_order_id": order.id,
            "total_harga": order.total_harga,
            "status": PaymentStatus.BELUM_BAYAR.value,
            "created_at": now,
            "updated_at": now,
        })
        return Transaction.from_row(row)

    async def _discard_orphans(self, order_id: int) -> bool:
        """
        Soft-delete unpaid, unproven transactions of an order that was
        rolled back to NEGOSIASI. An insert that timed out may have landed.
        """
        try:
            for row in await self.gateway.find_transactions_for_order(order_id):
                transaction = Transaction.from_row(row)
                if (
                    transaction.is_deleted
                    or transaction.status != PaymentStatus.BELUM_BAYAR
                    or transaction.proof_submitted
                ):
                    continue

                now = utcnow()
                await self.gateway.update_transaction(
                    transaction.id,
                    {"deleted_at": now, "updated_at": now},
                    expected_status=PaymentStatus.BELUM_BAYAR.value
                )
                logger.warning(
                    "deal_orphan_transaction_discarded",
                    order_id=order_id,
                    transaction_id=transaction.id
                )
        except OrderServiceError as e:
            logger.error("deal_orphan_cleanup_error", order_id=order_id, error=e.message)
            return False
        return True

    async def _compensate_deal(self, before: CustomOrder, after: CustomOrder) -> bool:
        """Restore the pre-deal order. Returns True if the rollback landed."""
        try:
            row = await self.gateway.update_order(
                after.id,
                {
                    "status": before.status.value,
                    "total_harga": before.total_harga,
                    "admin_id": before.admin_id,
                    "updated_at": utcnow(),
                },
                expected_status=after.status.value
            )
            compensated = row is not None
        except OrderServiceError as e:
            logger.error("deal_compensation_error", order_id=after.id, error=e.message)
            compensated = False

        # While the order stays in PENGERJAAN its transaction is the real one
        if compensated:
            compensated = await self._discard_orphans(after.id)

        saga_compensations_total.labels(
            operation="deal",
            result="compensated" if compensated else "failed"
        ).inc()

        if compensated:
            logger.warning("deal_compensated", order_id=after.id)
        else:
            logger.error(
                "deal_compensation_failed",
                order_id=after.id,
                stuck_state=after.status.value
            )
        return compensated

    # ========================================================================
    # DELETE
    # ========================================================================

    async def soft_delete(self, order_id: int) -> CustomOrder:
        """Mark deleted; idempotent for rows already marked."""
        order = await self._load(order_id, include_deleted=True)
        if order.is_deleted:
            return order

        now = utcnow()
        row = await self.gateway.update_order(order_id, {"deleted_at": now, "updated_at": now})
        if row is None:
            raise NotFoundError("custom_order", order_id)

        logger.info("custom_order_soft_deleted", order_id=order_id)
        return CustomOrder.from_row(row)

    async def hard_delete(self, order_id: int) -> CustomOrder:
        """Remove the row. Returns the record as it was before deletion."""
        order = await self._load(order_id, include_deleted=True)

        if not await self.gateway.delete_order(order_id):
            raise NotFoundError("custom_order", order_id)

        logger.info("custom_order_hard_deleted", order_id=order_id)
        return order

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def get_by_id(self, order_id: int, include_deleted: bool = False) -> CustomOrder:
        """Fetch one order; soft-deleted rows only with include_deleted."""
        return await self._load(order_id, include_deleted=include_deleted)

    async def list(
        self,
        requester: Requester,
        params: Union[ListQuery, Mapping[str, Any], None] = None
    ) -> Page:
        """
        Search, filter and paginate orders visible to the requester.

        Customers only ever see their own, non-deleted orders.
        """
        if not isinstance(params, ListQuery):
            params = parse_order_list_params(
                params,
                default_limit=self.default_page_size,
                max_limit=self.max_page_size
            )
        query = params.scoped_to(requester)

        rows, total = await self.gateway.find_orders(query)
        return query.paginate([CustomOrder.from_row(row) for row in rows], total)
