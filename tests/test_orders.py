import pytest

from errors import ConflictError, DependencyError, NotFoundError, ValidationError
from models import OrderStatus, PaymentStatus, Requester, utcnow
from tests.fakes import order_payload


ACCEPT = {"status": "setuju"}
DEAL = {"status": "deal", "total_harga": "750000"}


async def _negotiating(orders, admin_id=99):
    order = await orders.create(order_payload())
    return await orders.accept(order.id, admin_id, ACCEPT)


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_starts_pending_with_token(self, orders):
        order = await orders.create(order_payload())

        assert order.status == OrderStatus.PENDING
        assert order.unique_id.startswith("CSO-")
        assert order.total_harga is None
        assert order.admin_id is None

    @pytest.mark.asyncio
    async def test_create_then_get(self, orders):
        created = await orders.create(order_payload(warna="Hijau Botol"))
        fetched = await orders.get_by_id(created.id)

        assert fetched == created
        assert fetched.warna == "Hijau Botol"

    @pytest.mark.asyncio
    async def test_invalid_payload_never_persists(self, orders, gateway):
        with pytest.raises(ValidationError):
            await orders.create(order_payload(jumlah_barang=-1))

        assert gateway.orders == {}


class TestUpdate:

    @pytest.mark.asyncio
    async def test_switch_to_own_material_clears_material_id(self, orders):
        order = await orders.create(order_payload())

        updated = await orders.update(order.id, {"material_sendiri": True})

        assert updated.material_sendiri is True
        assert updated.material_id is None
        assert updated.model_baju_id == 7

    @pytest.mark.asyncio
    async def test_custom_reference_without_file_rejected(self, orders):
        order = await orders.create(order_payload())

        with pytest.raises(ValidationError) as exc_info:
            await orders.update(order.id, {"referensi_custom": True})

        assert "file_referensi_custom" in exc_info.value.fields

    @pytest.mark.asyncio
    async def test_missing_order(self, orders):
        with pytest.raises(NotFoundError):
            await orders.update(404, {"warna": "Merah"})


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_accept_records_admin(self, orders):
        order = await _negotiating(orders, admin_id=42)

        assert order.status == OrderStatus.NEGOSIASI
        assert order.admin_id == 42
        assert order.diterima_pada is not None

    @pytest.mark.asyncio
    async def test_reject_after_accept_conflicts(self, orders):
        order = await _negotiating(orders)

        with pytest.raises(ConflictError) as exc_info:
            await orders.reject(order.id, 99, {"status": "ditolak", "alasan_ditolak": "Bahan habis"})

        assert exc_info.value.current_state == "NEGOSIASI"
        assert (await orders.get_by_id(order.id)).status == OrderStatus.NEGOSIASI

    @pytest.mark.asyncio
    async def test_reject_stores_reason(self, orders):
        order = await orders.create(order_payload())

        rejected = await orders.reject(order.id, 99, {"status": "ditolak", "alasan_ditolak": "Desain tidak jelas"})

        assert rejected.status == OrderStatus.DITOLAK
        assert rejected.alasan_ditolak == "Desain tidak jelas"
        assert rejected.ditolak_pada is not None

    @pytest.mark.asyncio
    async def test_deal_opens_single_transaction(self, orders, payments):
        order = await _negotiating(orders)

        dealt = await orders.deal(order.id, 99, DEAL)
        transactions = await payments.list_for_order(order.id)

        assert dealt.status == OrderStatus.PENGERJAAN
        assert dealt.total_harga == 750000
        assert len(transactions) == 1
        assert transactions[0].total_harga == 750000
        assert transactions[0].status == PaymentStatus.BELUM_BAYAR
        assert transactions[0].user_id == order.user_id
        assert transactions[0].unique_id.startswith("TRX-")

    @pytest.mark.asyncio
    async def test_deal_zero_price_rejected(self, orders, gateway):
        order = await _negotiating(orders)

        with pytest.raises(ValidationError):
            await orders.deal(order.id, 99, {"status": "deal", "total_harga": 0})

        assert (await orders.get_by_id(order.id)).status == OrderStatus.NEGOSIASI
        assert gateway.transactions == {}

    @pytest.mark.asyncio
    async def test_deal_from_pending_conflicts(self, orders):
        order = await orders.create(order_payload())

        with pytest.raises(ConflictError):
            await orders.deal(order.id, 99, DEAL)

    @pytest.mark.asyncio
    async def test_deal_reuses_existing_transaction(self, orders, payments, gateway):
        order = await _negotiating(orders)
        gateway.transactions[50] = {
            "id": 50,
            "unique_id": "TRX-1-ABCDEF12",
            "user_id": order.user_id,
            "custom_order_id": order.id,
            "total_harga": 750000,
            "status": "BELUM_BAYAR",
            "deleted_at": None,
        }

        await orders.deal(order.id, 99, DEAL)

        assert [t.id for t in await payments.list_for_order(order.id)] == [50]
        assert "insert_transaction" not in gateway.calls

    @pytest.mark.asyncio
    async def test_cancel_keeps_assigned_admin(self, orders):
        order = await _negotiating(orders, admin_id=42)
        await orders.deal(order.id, 42, DEAL)

        cancelled = await orders.cancel(order.id, 7, {"status": "dibatalkan", "alasan_ditolak": "Pelanggan mundur"})

        assert cancelled.status == OrderStatus.DIBATALKAN
        assert cancelled.admin_id == 42
        assert cancelled.alasan_ditolak == "Pelanggan mundur"

    @pytest.mark.asyncio
    async def test_cancel_pending_assigns_admin(self, orders):
        order = await orders.create(order_payload())

        cancelled = await orders.cancel(order.id, 7, {"status": "dibatalkan"})

        assert cancelled.admin_id == 7
        assert cancelled.alasan_ditolak is None

    @pytest.mark.asyncio
    async def test_cancel_terminal_conflicts(self, orders):
        order = await orders.create(order_payload())
        await orders.cancel(order.id, 7, {"status": "dibatalkan"})

        with pytest.raises(ConflictError):
            await orders.cancel(order.id, 7, {"status": "dibatalkan"})

    @pytest.mark.asyncio
    async def test_lost_race_reports_conflict(self, orders, gateway):
        order = await orders.create(order_payload())
        original = gateway.fetch_order

        async def stale_fetch(order_id):
            row = await original(order_id)
            gateway.orders[order_id]["status"] = "DITOLAK"
            return row

        gateway.fetch_order = stale_fetch

        with pytest.raises(ConflictError) as exc_info:
            await orders.accept(order.id, 99, ACCEPT)

        assert exc_info.value.current_state == "DITOLAK"
        assert gateway.orders[order.id]["status"] == "DITOLAK"


class TestDealSaga:

    @pytest.mark.asyncio
    async def test_transaction_failure_restores_order(self, orders, gateway):
        order = await _negotiating(orders, admin_id=42)
        gateway.fail("insert_transaction")

        with pytest.raises(DependencyError) as exc_info:
            await orders.deal(order.id, 99, DEAL)

        error = exc_info.value
        assert error.operation == "deal"
        assert error.compensated is True
        assert error.status_code == 503

        restored = await orders.get_by_id(order.id)
        assert restored.status == OrderStatus.NEGOSIASI
        assert restored.total_harga is None
        assert restored.admin_id == 42
        assert gateway.transactions == {}

    @pytest.mark.asyncio
    async def test_failed_compensation_is_reported(self, orders, gateway):
        order = await _negotiating(orders)

        async def broken_insert(row):
            gateway.fail("update_order")
            raise DependencyError("insert failed", operation="insert_transaction")

        gateway.insert_transaction = broken_insert

        with pytest.raises(DependencyError) as exc_info:
            await orders.deal(order.id, 99, DEAL)

        assert exc_info.value.compensated is False
        assert gateway.orders[order.id]["status"] == "PENGERJAAN"

    @pytest.mark.asyncio
    async def test_retry_after_compensation_succeeds(self, orders, payments, gateway):
        order = await _negotiating(orders)
        gateway.fail("insert_transaction")

        with pytest.raises(DependencyError):
            await orders.deal(order.id, 99, DEAL)

        dealt = await orders.deal(order.id, 99, DEAL)

        assert dealt.status == OrderStatus.PENGERJAAN
        assert len(await payments.list_for_order(order.id)) == 1

    @pytest.mark.asyncio
    async def test_insert_that_landed_is_discarded(self, orders, payments, gateway):
        order = await _negotiating(orders)
        gateway.fail("insert_transaction", landed=True)

        with pytest.raises(DependencyError) as exc_info:
            await orders.deal(order.id, 99, {"status": "deal", "total_harga": 100000})

        assert exc_info.value.compensated is True
        assert (await orders.get_by_id(order.id)).status == OrderStatus.NEGOSIASI
        assert len(gateway.transactions) == 1
        assert await payments.list_for_order(order.id) == []

        await orders.deal(order.id, 99, {"status": "deal", "total_harga": 250000})

        [transaction] = await payments.list_for_order(order.id)
        assert transaction.total_harga == 250000

    @pytest.mark.asyncio
    async def test_refused_transaction_row_restores_order(self, orders, gateway):
        order = await _negotiating(orders)

        async def refused_insert(row):
            raise ValidationError({"user_id": "references a record that does not exist"})

        gateway.insert_transaction = refused_insert

        with pytest.raises(ValidationError) as exc_info:
            await orders.deal(order.id, 99, DEAL)

        assert "user_id" in exc_info.value.fields
        assert (await orders.get_by_id(order.id)).status == OrderStatus.NEGOSIASI

    @pytest.mark.asyncio
    async def test_soft_deleted_transaction_not_reused(self, orders, payments, gateway):
        order = await _negotiating(orders)
        gateway.transactions[50] = {
            "id": 50,
            "unique_id": "TRX-old",
            "user_id": order.user_id,
            "custom_order_id": order.id,
            "total_harga": 100000,
            "status": "BELUM_BAYAR",
            "deleted_at": utcnow(),
        }

        await orders.deal(order.id, 99, DEAL)

        [transaction] = await payments.list_for_order(order.id)
        assert transaction.id != 50
        assert transaction.total_harga == 750000

    @pytest.mark.asyncio
    async def test_stale_unpaid_transaction_repriced(self, orders, payments, gateway):
        order = await _negotiating(orders, admin_id=42)
        gateway.transactions[50] = {
            "id": 50,
            "unique_id": "TRX-old",
            "user_id": order.user_id,
            "admin_id": 42,
            "custom_order_id": order.id,
            "total_harga": 100000,
            "status": "BELUM_BAYAR",
            "deleted_at": None,
        }

        await orders.deal(order.id, 99, DEAL)

        [transaction] = await payments.list_for_order(order.id)
        assert transaction.id == 50
        assert transaction.total_harga == 750000
        assert transaction.admin_id == 99
        assert "insert_transaction" not in gateway.calls


class TestDelete:

    @pytest.mark.asyncio
    async def test_soft_delete_hides_and_is_idempotent(self, orders):
        order = await orders.create(order_payload())

        first = await orders.soft_delete(order.id)
        second = await orders.soft_delete(order.id)

        assert first.deleted_at is not None
        assert second.deleted_at == first.deleted_at
        with pytest.raises(NotFoundError):
            await orders.get_by_id(order.id)
        assert (await orders.get_by_id(order.id, include_deleted=True)).is_deleted

    @pytest.mark.asyncio
    async def test_soft_deleted_order_cannot_transition(self, orders):
        order = await orders.create(order_payload())
        await orders.soft_delete(order.id)

        with pytest.raises(NotFoundError):
            await orders.accept(order.id, 99, ACCEPT)

    @pytest.mark.asyncio
    async def test_hard_delete_returns_previous_record(self, orders, gateway):
        order = await orders.create(order_payload())

        removed = await orders.hard_delete(order.id)

        assert removed.id == order.id
        assert removed.nama_pemesanan == order.nama_pemesanan
        assert order.id not in gateway.orders
        with pytest.raises(NotFoundError):
            await orders.hard_delete(order.id)


class TestList:

    @pytest.mark.asyncio
    async def test_customer_sees_only_own_orders(self, orders, customer, admin):
        await orders.create(order_payload(user_id=1))
        await orders.create(order_payload(user_id=1))
        await orders.create(order_payload(user_id=2))

        own = await orders.list(customer, {"user_id": "2"})
        everything = await orders.list(admin, {})

        assert own.total == 2
        assert {o.user_id for o in own.items} == {1}
        assert everything.total == 3

    @pytest.mark.asyncio
    async def test_soft_deleted_excluded(self, orders, customer):
        keep = await orders.create(order_payload())
        gone = await orders.create(order_payload())
        await orders.soft_delete(gone.id)

        page = await orders.list(customer)

        assert [o.id for o in page.items] == [keep.id]

    @pytest.mark.asyncio
    async def test_search_and_status_filter(self, orders, admin):
        await orders.create(order_payload(nama_pemesanan="Jaket Himpunan"))
        target = await orders.create(order_payload(nama_pemesanan="Kaos Angkatan"))
        await orders.accept(target.id, 99, ACCEPT)

        by_name = await orders.list(admin, {"search": "angkatan"})
        by_status = await orders.list(admin, {"status": "negosiasi"})

        assert [o.id for o in by_name.items] == [target.id]
        assert [o.id for o in by_status.items] == [target.id]

    @pytest.mark.asyncio
    async def test_pagination_metadata(self, orders):
        manager = Requester.manager(5)
        for _ in range(5):
            await orders.create(order_payload())

        page = await orders.list(manager, {"page": "2", "limit": "2"})

        assert len(page.items) == 2
        assert page.total == 5
        assert page.total_pages == 3
        assert page.to_dict()["pagination"] == {"total": 5, "page": 2, "limit": 2, "total_pages": 3}
