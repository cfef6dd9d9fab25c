"""
Payment Workflow Engine
=======================
Transaction lifecycle: proof submission, admin confirmation or rejection,
and resubmission after a rejection.

Accepting a payment that belongs to a custom order also completes the
order. Both writes form one unit: if the order write fails, the
transaction is put back to BELUM_BAYAR and a DependencyError reports
whether that rollback worked.
"""

from typing import Dict, Any, List, Mapping, Union

import structlog

from errors import ConflictError, DependencyError, ForbiddenError, NotFoundError
from models import (
    ListQuery,
    OrderStatus,
    Page,
    PaymentStatus,
    Requester,
    Transaction,
    new_token,
    utcnow,
)
from order_state import OrderStateMachine, PaymentStateMachine, saga_compensations_total
from orders import TRANSACTION_TOKEN_PREFIX
from validation import (
    parse_transaction_list_params,
    validate_reject_payment,
    validate_resend_payment,
    validate_submit_payment,
    validate_transaction_create,
    validate_transaction_update,
)


logger = structlog.get_logger(__name__)


class PaymentWorkflowEngine:
    """
    Owns transaction state and the order completion side effect.

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

    async def _load(self, transaction_id: int, include_deleted: bool = False) -> Transaction:
        row = await self.gateway.fetch_transaction(transaction_id)
        if row is None:
            raise NotFoundError("transaction", transaction_id)

        transaction = Transaction.from_row(row)
        if transaction.is_deleted and not include_deleted:
            raise NotFoundError("transaction", transaction_id)
        return transaction

    @staticmethod
    def _require_owner(transaction: Transaction, requester_id: int):
        if transaction.user_id != requester_id:
            logger.warning(
                "transaction_owner_mismatch",
                transaction_id=transaction.id,
                requester_id=requester_id
            )
            raise ForbiddenError("only the owning customer may pay this transaction")

    async def _transition(
        self,
        transaction: Transaction,
        target: PaymentStatus,
        fields: Dict[str, Any]
    ) -> Transaction:
        PaymentStateMachine.ensure(transaction.status, target, transaction.id)

        changes = dict(fields)
        changes["status"] = target.value
        changes["updated_at"] = utcnow()

        row = await self.gateway.update_transaction(
            transaction.id,
            changes,
            expected_status=transaction.status.value
        )
        if row is None:
            current = await self.gateway.fetch_transaction(transaction.id)
            if current is None:
                raise NotFoundError("transaction", transaction.id)
            raise ConflictError(
                f"transaction {transaction.id} was modified concurrently "
                f"(now {current.get('status')})",
                current_state=str(current.get("status")),
                target_state=target.value
            )

        PaymentStateMachine.record(transaction.status, target, transaction.id)
        return Transaction.from_row(row)

    # ========================================================================
    # ADMIN CREATE / UPDATE
    # ========================================================================

    async def create(self, payload: Mapping[str, Any]) -> Transaction:
        """Direct administrative creation, not linked to any order."""
        data = validate_transaction_create(payload)

        now = utcnow()
        row = dict(data)
        row.update({
            "unique_id": new_token(TRANSACTION_TOKEN_PREFIX),
            "status": PaymentStatus.BELUM_BAYAR.value,
            "custom_order_id": None,
            "created_at": now,
            "updated_at": now,
        })

        stored = Transaction.from_row(await self.gateway.insert_transaction(row))
        logger.info(
            "transaction_created",
            transaction_id=stored.id,
            unique_id=stored.unique_id,
            user_id=stored.user_id
        )
        return stored

    async def update(self, transaction_id: int, payload: Mapping[str, Any]) -> Transaction:
        """
        Generic admin update of amount, method, remark and admin.

        Raises:
            ConflictError: Changing the amount of a settled transaction
        """
        changes = validate_transaction_update(payload)
        transaction = await self._load(transaction_id)

        if (
            transaction.status == PaymentStatus.LUNAS
            and "total_harga" in changes
            and changes["total_harga"] != transaction.total_harga
        ):
            raise ConflictError(
                "cannot change the amount of a settled transaction",
                current_state=transaction.status.value
            )

        fields = dict(changes)
        fields["updated_at"] = utcnow()

        row = await self.gateway.update_transaction(transaction_id, fields)
        if row is None:
            raise NotFoundError("transaction", transaction_id)

        logger.info("transaction_updated", transaction_id=transaction_id, fields=sorted(changes))
        return Transaction.from_row(row)

    # ========================================================================
    # CUSTOMER ACTIONS
    # ========================================================================

    async def submit_payment(
        self,
        transaction_id: int,
        payload: Mapping[str, Any],
        requester_id: int
    ) -> Transaction:
        """
        Attach proof of payment; stays BELUM_BAYAR until an admin decides.

        Raises:
            ForbiddenError: Requester does not own the transaction
            ConflictError: Transaction already settled or rejected
        """
        data = validate_submit_payment(payload)
        transaction = await self._load(transaction_id)
        self._require_owner(transaction, requester_id)

        # DITOLAK -> BELUM_BAYAR is the resend edge, not a plain submission
        if transaction.status == PaymentStatus.DITOLAK:
            raise ConflictError(
                "rejected payments must be resent, not submitted",
                current_state=transaction.status.value,
                target_state=PaymentStatus.BELUM_BAYAR.value
            )

        updated = await self._transition(transaction, PaymentStatus.BELUM_BAYAR, data)

        logger.info(
            "payment_submitted",
            transaction_id=transaction_id,
            payment_method=data["payment_method"]
        )
        return updated

    async def resend_payment(
        self,
        transaction_id: int,
        payload: Mapping[str, Any],
        requester_id: int
    ) -> Transaction:
        """
        Resubmit proof after a rejection: DITOLAK -> BELUM_BAYAR.

        The status check runs before payload validation, so a transaction
        that is not DITOLAK always yields ConflictError.
        """
        transaction = await self._load(transaction_id)
        self._require_owner(transaction, requester_id)

        if transaction.status != PaymentStatus.DITOLAK:
            raise ConflictError(
                "can only resend for rejected transactions",
                current_state=transaction.status.value,
                target_state=PaymentStatus.BELUM_BAYAR.value
            )

        data = validate_resend_payment(payload)
        data["alasan_ditolak"] = None

        updated = await self._transition(transaction, PaymentStatus.BELUM_BAYAR, data)

        logger.info("payment_resent", transaction_id=transaction_id)
        return updated

    # ========================================================================
    # ADMIN DECISIONS
    # ========================================================================

    async def accept_payment(self, transaction_id: int, admin_id: int) -> Transaction:
        """
        BELUM_BAYAR -> LUNAS, completing the linked order.

        Raises:
            ConflictError: Transaction not awaiting payment
            DependencyError: Order completion failed; `compensated` tells
                whether the transaction was restored to BELUM_BAYAR
        """
        transaction = await self._load(transaction_id)
        updated = await self._transition(transaction, PaymentStatus.LUNAS, {"admin_id": admin_id})

        if updated.custom_order_id is not None:
            try:
                await self._complete_order(updated.custom_order_id)
            except DependencyError as e:
                compensated = await self._compensate_accept(transaction, updated)
                raise DependencyError(
                    f"accepting transaction {transaction_id} failed completing its order",
                    operation="accept_payment",
                    compensated=compensated,
                    details={
                        "transaction_id": transaction_id,
                        "order_id": updated.custom_order_id,
                        "cause": e.message
                    }
                )

        logger.info(
            "payment_accepted",
            transaction_id=transaction_id,
            admin_id=admin_id,
            order_id=updated.custom_order_id
        )
        return updated

    async def _complete_order(self, order_id: int):
        """Set the linked order to SELESAI."""
        row = await self.gateway.fetch_order(order_id)
        if row is None:
            logger.warning("accept_payment_order_missing", order_id=order_id)
            return

        current = OrderStatus(str(row.get("status")).upper())
        if current == OrderStatus.SELESAI:
            return

        updated = await self.gateway.update_order(
            order_id,
            {"status": OrderStatus.SELESAI.value, "updated_at": utcnow()},
            expected_status=current.value
        )
        if updated is None:
            raise DependencyError(
                f"custom order {order_id} changed while completing it",
                operation="complete_order"
            )

        if OrderStateMachine.can_transition(current, OrderStatus.SELESAI):
            OrderStateMachine.record(current, OrderStatus.SELESAI, order_id)
        else:
            OrderStateMachine.record_forced(
                current, OrderStatus.SELESAI, order_id, reason="payment accepted"
            )

    async def _compensate_accept(self, before: Transaction, after: Transaction) -> bool:
        try:
            row = await self.gateway.update_transaction(
                after.id,
                {
                    "status": before.status.value,
                    "admin_id": before.admin_id,
                    "updated_at": utcnow(),
                },
                expected_status=after.status.value
            )
            compensated = row is not None
        except DependencyError as e:
            logger.error("accept_compensation_error", transaction_id=after.id, error=e.message)
            compensated = False

        saga_compensations_total.labels(
            operation="accept_payment",
            result="compensated" if compensated else "failed"
        ).inc()

        if compensated:
            logger.warning("accept_payment_compensated", transaction_id=after.id)
        else:
            logger.error("accept_payment_compensation_failed", transaction_id=after.id)
        return compensated

    async def reject_payment(
        self,
        transaction_id: int,
        admin_id: int,
        payload: Mapping[str, Any]
    ) -> Transaction:
        """BELUM_BAYAR -> DITOLAK with a reason."""
        reason = validate_reject_payment(payload)
        transaction = await self._load(transaction_id)

        updated = await self._transition(transaction, PaymentStatus.DITOLAK, {
            "admin_id": admin_id,
            "alasan_ditolak": reason,
        })

        logger.info("payment_rejected", transaction_id=transaction_id, admin_id=admin_id)
        return updated

    # ========================================================================
    # DELETE
    # ========================================================================

    async def soft_delete(self, transaction_id: int) -> Transaction:
        """Mark deleted; idempotent for rows already marked."""
        transaction = await self._load(transaction_id, include_deleted=True)
        if transaction.is_deleted:
            return transaction

        now = utcnow()
        row = await self.gateway.update_transaction(
            transaction_id,
            {"deleted_at": now, "updated_at": now}
        )
        if row is None:
            raise NotFoundError("transaction", transaction_id)

        logger.info("transaction_soft_deleted", transaction_id=transaction_id)
        return Transaction.from_row(row)

    async def hard_delete(self, transaction_id: int) -> Transaction:
        """Remove the row. Returns the record as it was before deletion."""
        transaction = await self._load(transaction_id, include_deleted=True)

        if not await self.gateway.delete_transaction(transaction_id):
            raise NotFoundError("transaction", transaction_id)

        logger.info("transaction_hard_deleted", transaction_id=transaction_id)
        return transaction

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def get_by_id(self, transaction_id: int, include_deleted: bool = False) -> Transaction:
        return await self._load(transaction_id, include_deleted=include_deleted)

    async def list(
        self,
        requester: Requester,
        params: Union[ListQuery, Mapping[str, Any], None] = None
    ) -> Page:
        """
        Search, filter and paginate transactions visible to the requester.

        Customers only ever see transactions they own.
        """
        if not isinstance(params, ListQuery):
            params = parse_transaction_list_params(
                params,
                default_limit=self.default_page_size,
                max_limit=self.max_page_size
            )
        query = params.scoped_to(requester)

        rows, total = await self.gateway.find_transactions(query)
        return query.paginate([Transaction.from_row(row) for row in rows], total)

    async def list_for_order(self, order_id: int) -> List[Transaction]:
        """Non-deleted transactions spawned by an order."""
        rows = await self.gateway.find_transactions_for_order(order_id)
        transactions = [Transaction.from_row(row) for row in rows]
        return [t for t in transactions if not t.is_deleted]
