import pytest

from errors import ConflictError
from models import OrderStatus, PaymentStatus
from order_state import OrderStateMachine, PaymentStateMachine


class TestOrderStateMachine:

    @pytest.mark.parametrize("current,target", [
        (OrderStatus.PENDING, OrderStatus.NEGOSIASI),
        (OrderStatus.PENDING, OrderStatus.DITOLAK),
        (OrderStatus.PENDING, OrderStatus.DIBATALKAN),
        (OrderStatus.NEGOSIASI, OrderStatus.PENGERJAAN),
        (OrderStatus.NEGOSIASI, OrderStatus.DIBATALKAN),
        (OrderStatus.PEMBAYARAN, OrderStatus.DIBATALKAN),
        (OrderStatus.PENGERJAAN, OrderStatus.SELESAI),
        (OrderStatus.PENGERJAAN, OrderStatus.DIBATALKAN),
    ])
    def test_legal_edges(self, current, target):
        assert OrderStateMachine.can_transition(current, target)
        OrderStateMachine.ensure(current, target, entity_id=1)

    @pytest.mark.parametrize("current,target", [
        (OrderStatus.NEGOSIASI, OrderStatus.DITOLAK),
        (OrderStatus.PENDING, OrderStatus.PENGERJAAN),
        (OrderStatus.DITOLAK, OrderStatus.NEGOSIASI),
        (OrderStatus.SELESAI, OrderStatus.DIBATALKAN),
        (OrderStatus.DIBATALKAN, OrderStatus.PENDING),
    ])
    def test_illegal_edges_raise_conflict(self, current, target):
        with pytest.raises(ConflictError) as exc_info:
            OrderStateMachine.ensure(current, target, entity_id=1)

        assert exc_info.value.current_state == current.value
        assert exc_info.value.target_state == target.value
        assert exc_info.value.status_code == 409

    def test_terminal_states(self):
        assert OrderStateMachine.is_terminal(OrderStatus.DITOLAK)
        assert OrderStateMachine.is_terminal(OrderStatus.DIBATALKAN)
        assert OrderStateMachine.is_terminal(OrderStatus.SELESAI)
        assert not OrderStateMachine.is_terminal(OrderStatus.PEMBAYARAN)

    def test_no_edge_enters_pembayaran(self):
        for targets in OrderStateMachine.VALID_TRANSITIONS.values():
            assert OrderStatus.PEMBAYARAN not in targets


class TestPaymentStateMachine:

    def test_resend_edge_only_from_rejected(self):
        assert PaymentStateMachine.can_transition(PaymentStatus.DITOLAK, PaymentStatus.BELUM_BAYAR)
        assert not PaymentStateMachine.can_transition(PaymentStatus.DITOLAK, PaymentStatus.LUNAS)

    def test_lunas_is_terminal(self):
        assert PaymentStateMachine.is_terminal(PaymentStatus.LUNAS)
        with pytest.raises(ConflictError):
            PaymentStateMachine.ensure(PaymentStatus.LUNAS, PaymentStatus.DITOLAK)

    def test_custom_message(self):
        with pytest.raises(ConflictError, match="nope"):
            PaymentStateMachine.ensure(
                PaymentStatus.LUNAS, PaymentStatus.BELUM_BAYAR, message="nope"
            )
