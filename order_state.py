"""
Order & Payment State Machines
==============================
Formal transition tables for custom orders and transactions.

State invariants:
- Only the edges listed in VALID_TRANSITIONS are legal
- Illegal transitions raise ConflictError before anything is persisted
- Every committed transition is logged and counted
"""

import logging
from enum import Enum
from typing import Dict, Optional, Set, Any

from prometheus_client import Counter

from errors import ConflictError
from models import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_transitions_total = Counter(
    'custom_order_transitions_total',
    'Custom order state transitions',
    ['from_state', 'to_state']
)
transaction_transitions_total = Counter(
    'transaction_transitions_total',
    'Transaction state transitions',
    ['from_state', 'to_state']
)
saga_compensations_total = Counter(
    'saga_compensations_total',
    'Rollbacks of the first write after the second write failed',
    ['operation', 'result']
)


class StateMachine:
    """
    Transition table shared by order and payment lifecycles.

    Subclasses define VALID_TRANSITIONS and the entity name used in
    log lines and error messages.
    """

    VALID_TRANSITIONS: Dict[Enum, Set[Enum]] = {}
    ENTITY = "entity"
    _counter: Optional[Counter] = None

    @classmethod
    def can_transition(cls, current: Enum, target: Enum) -> bool:
        """
        Check if transition to target state is valid.

        Args:
            current: Current state
            target: Desired next state

        Returns:
            True if transition is valid
        """
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal(cls, state: Enum) -> bool:
        """Check if no further transitions leave this state."""
        return not cls.VALID_TRANSITIONS.get(state)

    @classmethod
    def ensure(
        cls,
        current: Enum,
        target: Enum,
        entity_id: Any = None,
        message: Optional[str] = None
    ):
        """
        Validate a transition.

        Raises:
            ConflictError: If the transition is not in the table
        """
        if cls.can_transition(current, target):
            return

        error_msg = message or (
            f"Invalid {cls.ENTITY} transition: {current.value} -> {target.value}"
        )
        logger.warning(
            error_msg,
            extra={
                "entity": cls.ENTITY,
                "entity_id": entity_id,
                "from_state": current.value,
                "to_state": target.value
            }
        )
        raise ConflictError(
            error_msg,
            current_state=current.value,
            target_state=target.value
        )

    @classmethod
    def record(cls, current: Enum, target: Enum, entity_id: Any = None):
        """Log and count a committed transition."""
        if cls._counter is not None:
            cls._counter.labels(
                from_state=current.value,
                to_state=target.value
            ).inc()

        logger.info(
            f"{cls.ENTITY} {entity_id}: {current.value} -> {target.value}",
            extra={
                "entity": cls.ENTITY,
                "entity_id": entity_id,
                "from_state": current.value,
                "to_state": target.value
            }
        )

    @classmethod
    def record_forced(cls, current: Enum, target: Enum, entity_id: Any, reason: str):
        """
        Log and count a transition applied outside the table.

        Args:
            current: State before the write
            target: State written
            entity_id: Record id
            reason: Why the table was bypassed
        """
        logger.warning(
            f"FORCED {cls.ENTITY} transition: {current.value} -> {target.value}",
            extra={
                "entity": cls.ENTITY,
                "entity_id": entity_id,
                "from_state": current.value,
                "to_state": target.value,
                "reason": reason
            }
        )
        if cls._counter is not None:
            cls._counter.labels(
                from_state=current.value,
                to_state=target.value
            ).inc()


class OrderStateMachine(StateMachine):
    """
    Custom order lifecycle.

    State flow:
        PENDING -> NEGOSIASI -> PENGERJAAN -> SELESAI
        PENDING -> DITOLAK
        any non-terminal -> DIBATALKAN
    """

    ENTITY = "custom_order"
    _counter = order_transitions_total

    VALID_TRANSITIONS = {
        OrderStatus.PENDING: {
            OrderStatus.NEGOSIASI,
            OrderStatus.DITOLAK,
            OrderStatus.DIBATALKAN
        },
        OrderStatus.NEGOSIASI: {OrderStatus.PENGERJAAN, OrderStatus.DIBATALKAN},
        # No transition sets PEMBAYARAN; it only keeps the cancel edge
        OrderStatus.PEMBAYARAN: {OrderStatus.DIBATALKAN},
        OrderStatus.PENGERJAAN: {OrderStatus.SELESAI, OrderStatus.DIBATALKAN},
        OrderStatus.DITOLAK: set(),     # Terminal
        OrderStatus.DIBATALKAN: set(),  # Terminal
        OrderStatus.SELESAI: set()      # Terminal
    }


class PaymentStateMachine(StateMachine):
    """
    Transaction lifecycle.

    State flow:
        BELUM_BAYAR -> BELUM_BAYAR (proof submitted)
        BELUM_BAYAR -> LUNAS | DITOLAK
        DITOLAK -> BELUM_BAYAR (resend)
    """

    ENTITY = "transaction"
    _counter = transaction_transitions_total

    VALID_TRANSITIONS = {
        PaymentStatus.BELUM_BAYAR: {
            PaymentStatus.BELUM_BAYAR,
            PaymentStatus.LUNAS,
            PaymentStatus.DITOLAK
        },
        PaymentStatus.DITOLAK: {PaymentStatus.BELUM_BAYAR},
        PaymentStatus.LUNAS: set()  # Terminal
    }
