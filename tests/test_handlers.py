import pytest

from cache import CacheCoordinator, CacheKeys, ResponseCache
from errors import DependencyError, ForbiddenError, NotFoundError, ValidationError
from handlers import OrderService
from models import OrderStatus, PaymentStatus
from tests.fakes import BrokenCache, RecordingNotifier, order_payload


ACCEPT = {"status": "setuju"}
DEAL = {"status": "deal", "total_harga": 300000}
PROOF = {"file_screenshot": "uploads/bukti.jpg", "payment_method": "QRIS"}


async def _dealt_order(service, customer, admin):
    order = await service.create_order(customer, order_payload())
    await service.accept_order(admin, order.id, ACCEPT)
    await service.deal_order(admin, order.id, DEAL)
    transactions = await service.list_order_transactions(admin, order.id)
    return order, transactions[0]


class TestOrderAccess:

    @pytest.mark.asyncio
    async def test_customer_user_id_is_forced(self, service, customer):
        order = await service.create_order(customer, order_payload(user_id=2))
        assert order.user_id == customer.id

    @pytest.mark.asyncio
    async def test_admin_may_create_for_customer(self, service, admin):
        order = await service.create_order(admin, order_payload(user_id=5))
        assert order.user_id == 5

    @pytest.mark.asyncio
    async def test_other_customer_forbidden(self, service, customer, other_customer):
        order = await service.create_order(customer, order_payload())

        with pytest.raises(ForbiddenError):
            await service.get_order(other_customer, order.id)

    @pytest.mark.asyncio
    async def test_customer_cannot_run_admin_actions(self, service, customer):
        order = await service.create_order(customer, order_payload())

        with pytest.raises(ForbiddenError):
            await service.accept_order(customer, order.id, ACCEPT)
        with pytest.raises(ForbiddenError):
            await service.update_order(customer, order.id, {"warna": "Merah"})
        with pytest.raises(ForbiddenError):
            await service.soft_delete_order(customer, order.id)

    @pytest.mark.asyncio
    async def test_soft_deleted_hidden_from_customer_only(self, service, customer, admin):
        order = await service.create_order(customer, order_payload())
        await service.soft_delete_order(admin, order.id)

        with pytest.raises(NotFoundError):
            await service.get_order(customer, order.id)
        assert (await service.get_order(admin, order.id)).is_deleted

    @pytest.mark.asyncio
    async def test_list_scoped_per_role(self, service, customer, other_customer, admin):
        await service.create_order(customer, order_payload())
        await service.create_order(other_customer, order_payload())

        assert (await service.list_orders(customer)).total == 1
        assert (await service.list_orders(admin)).total == 2


class TestNotifications:

    @pytest.mark.asyncio
    async def test_notifier_called_with_token(self, service, notifier, customer):
        order = await service.create_order(customer, order_payload())
        assert notifier.calls == [(order.id, order.unique_id)]

    @pytest.mark.asyncio
    async def test_notifier_failure_absorbed(self, orders, payments, customer):
        service = OrderService(
            orders,
            payments,
            ResponseCache(CacheCoordinator()),
            RecordingNotifier(error=RuntimeError("twilio down"))
        )

        order = await service.create_order(customer, order_payload())

        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_async_notifier_failure_absorbed(self, orders, payments, customer):
        class AsyncNotifier:
            async def notify_order_created(self, order_id, order_token):
                raise RuntimeError("boom")

        service = OrderService(orders, payments, ResponseCache(CacheCoordinator()), AsyncNotifier())

        await service.create_order(customer, order_payload())
        await service.drain_background()

        assert not service._background

    @pytest.mark.asyncio
    async def test_no_notification_for_invalid_order(self, service, notifier, customer):
        with pytest.raises(ValidationError):
            await service.create_order(customer, order_payload(jumlah_barang=-1))
        assert notifier.calls == []


class TestCaching:

    @pytest.mark.asyncio
    async def test_repeat_read_served_from_cache(self, service, gateway, customer):
        order = await service.create_order(customer, order_payload())
        gateway.calls.clear()

        await service.get_order(customer, order.id)
        await service.get_order(customer, order.id)

        assert gateway.calls.count("fetch_order") == 1

    @pytest.mark.asyncio
    async def test_mutation_invalidates_single_and_lists(self, service, cache_backend, customer, admin):
        order = await service.create_order(customer, order_payload())
        await service.get_order(customer, order.id)
        await service.list_orders(customer)
        await service.list_orders(admin)

        accepted = await service.accept_order(admin, order.id, ACCEPT)

        assert cache_backend.keys() == []
        assert (await service.get_order(customer, order.id)).status == accepted.status

    @pytest.mark.asyncio
    async def test_other_users_list_survives(self, service, cache_backend, customer, other_customer, admin):
        order = await service.create_order(customer, order_payload())
        await service.list_orders(other_customer)

        await service.accept_order(admin, order.id, ACCEPT)

        assert any(key.startswith(CacheKeys.orders_user(other_customer.id)) for key in cache_backend.keys())

    @pytest.mark.asyncio
    async def test_broken_cache_never_fails_requests(self, orders, payments, notifier, customer, admin):
        service = OrderService(orders, payments, ResponseCache(BrokenCache()), notifier)

        order = await service.create_order(customer, order_payload())
        await service.accept_order(admin, order.id, ACCEPT)

        assert (await service.get_order(customer, order.id)).status == OrderStatus.NEGOSIASI
        assert (await service.list_orders(customer)).total == 1

    @pytest.mark.asyncio
    async def test_failed_deal_drops_order_groups(self, service, gateway, cache_backend, customer, admin):
        order = await service.create_order(customer, order_payload())
        await service.accept_order(admin, order.id, ACCEPT)
        await service.get_order(customer, order.id)
        await service.list_orders(customer)
        gateway.fail("insert_transaction")

        with pytest.raises(DependencyError):
            await service.deal_order(admin, order.id, DEAL)

        assert cache_backend.keys() == []
        assert (await service.get_order(customer, order.id)).status == OrderStatus.NEGOSIASI


class TestPaymentFlow:

    @pytest.mark.asyncio
    async def test_full_flow(self, service, customer, admin):
        order, transaction = await _dealt_order(service, customer, admin)

        await service.submit_payment(customer, transaction.id, PROOF)
        accepted = await service.accept_payment(admin, transaction.id)

        assert accepted.status == PaymentStatus.LUNAS
        assert (await service.get_order(customer, order.id)).status == OrderStatus.SELESAI
        assert (await service.get_transaction(customer, transaction.id)).status == PaymentStatus.LUNAS

    @pytest.mark.asyncio
    async def test_order_transactions_cache_refreshed_after_deal(self, service, customer, admin):
        order = await service.create_order(customer, order_payload())
        assert await service.list_order_transactions(customer, order.id) == []

        await service.accept_order(admin, order.id, ACCEPT)
        await service.deal_order(admin, order.id, DEAL)

        assert len(await service.list_order_transactions(customer, order.id)) == 1

    @pytest.mark.asyncio
    async def test_customer_cannot_accept(self, service, customer, admin):
        _, transaction = await _dealt_order(service, customer, admin)

        with pytest.raises(ForbiddenError):
            await service.accept_payment(customer, transaction.id)

    @pytest.mark.asyncio
    async def test_stranger_cannot_read_transaction(self, service, customer, other_customer, admin):
        _, transaction = await _dealt_order(service, customer, admin)

        with pytest.raises(ForbiddenError):
            await service.get_transaction(other_customer, transaction.id)

    @pytest.mark.asyncio
    async def test_failed_accept_invalidates_order(self, service, gateway, cache_backend, customer, admin):
        order, transaction = await _dealt_order(service, customer, admin)
        await service.get_order(customer, order.id)
        await service.get_transaction(customer, transaction.id)
        gateway.fail("update_order")

        with pytest.raises(DependencyError):
            await service.accept_payment(admin, transaction.id)

        assert CacheKeys.order(order.id) not in cache_backend.keys()
        assert CacheKeys.transaction(transaction.id) not in cache_backend.keys()
        assert (await service.get_transaction(customer, transaction.id)).status == PaymentStatus.BELUM_BAYAR

    @pytest.mark.asyncio
    async def test_health(self, service):
        health = service.get_health()
        assert health["status"] == "healthy"
        assert set(health["components"]) == {"database", "cache", "notifications"}
        assert health["stats"]["cache"]["entries"] == 0
