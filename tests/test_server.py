import pytest
from fastapi.testclient import TestClient

from errors import AuthenticationError
from server import create_app, get_requester
from models import Role
from tests.fakes import order_payload


CUSTOMER = {"X-User-Id": "1", "X-User-Role": "User"}
STRANGER = {"X-User-Id": "2", "X-User-Role": "User"}
ADMIN = {"X-User-Id": "99", "X-User-Role": "Admin"}


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as test_client:
        yield test_client


def _create_order(client):
    response = client.post("/custom-orders", json=order_payload(), headers=CUSTOMER)
    assert response.status_code == 201
    return response.json()["data"]


class TestIdentity:

    def test_role_names_case_insensitive(self):
        assert get_requester("5", "admin").role == Role.ADMIN
        assert get_requester("5", "MANAGER").role == Role.MANAGER

    @pytest.mark.parametrize("user_id,role", [(None, "User"), ("1", None), ("abc", "User"), ("1", "Owner")])
    def test_bad_identity(self, user_id, role):
        with pytest.raises(AuthenticationError):
            get_requester(user_id, role)

    def test_missing_headers_401(self, client):
        response = client.get("/custom-orders")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"


class TestOrderRoutes:

    def test_create_and_read(self, client):
        order = _create_order(client)

        assert order["status"] == "PENDING"
        assert order["unique_id"].startswith("CSO-")

        response = client.get(f"/custom-orders/{order['id']}", headers=CUSTOMER)
        assert response.status_code == 200
        assert response.json()["data"]["nama_pemesanan"] == order["nama_pemesanan"]

    def test_validation_error_body(self, client):
        response = client.post(
            "/custom-orders",
            json=order_payload(ukuran="huge", jumlah_barang=-1),
            headers=CUSTOMER
        )

        body = response.json()
        assert response.status_code == 400
        assert body["success"] is False
        assert set(body["errors"]) >= {"ukuran", "jumlah_barang"}

    def test_malformed_json(self, client):
        response = client.post(
            "/custom-orders",
            content=b"{not json",
            headers={**CUSTOMER, "Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_stranger_forbidden(self, client):
        order = _create_order(client)

        response = client.get(f"/custom-orders/{order['id']}", headers=STRANGER)

        assert response.status_code == 403

    def test_unknown_order_404(self, client):
        response = client.get("/custom-orders/999", headers=ADMIN)
        assert response.status_code == 404

    def test_accept_deal_flow(self, client):
        order = _create_order(client)
        order_url = f"/custom-orders/{order['id']}"

        assert client.patch(f"{order_url}/accept", json={"status": "setuju"}, headers=ADMIN).status_code == 200

        response = client.patch(
            f"{order_url}/deal-negosiasi",
            json={"status": "deal", "total_harga": "450000"},
            headers=ADMIN
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "PENGERJAAN"
        assert response.json()["data"]["total_harga"] == "450000"

        transactions = client.get(f"{order_url}/transactions", headers=CUSTOMER).json()["data"]
        assert len(transactions) == 1
        assert transactions[0]["total_harga"] == "450000"

    def test_illegal_transition_409(self, client):
        order = _create_order(client)

        response = client.patch(
            f"/custom-orders/{order['id']}/deal-negosiasi",
            json={"status": "deal", "total_harga": 1000},
            headers=ADMIN
        )

        body = response.json()
        assert response.status_code == 409
        assert body["details"]["current_state"] == "PENDING"

    def test_customer_cannot_accept(self, client):
        order = _create_order(client)

        response = client.patch(
            f"/custom-orders/{order['id']}/accept",
            json={"status": "setuju"},
            headers=CUSTOMER
        )
        assert response.status_code == 403

    def test_list_pagination(self, client):
        for _ in range(3):
            _create_order(client)

        body = client.get("/custom-orders?limit=2&page=1", headers=ADMIN).json()

        assert len(body["data"]) == 2
        assert body["pagination"] == {"total": 3, "page": 1, "limit": 2, "total_pages": 2}

    def test_bad_list_params_400(self, client):
        response = client.get("/custom-orders?page=0&sort_by=password", headers=ADMIN)

        assert response.status_code == 400
        assert set(response.json()["errors"]) == {"page", "sort_by"}


class TestTransactionRoutes:

    def test_payment_flow(self, client):
        order = _create_order(client)
        order_url = f"/custom-orders/{order['id']}"
        client.patch(f"{order_url}/accept", json={"status": "setuju"}, headers=ADMIN)
        client.patch(f"{order_url}/deal-negosiasi", json={"status": "deal", "total_harga": 1000}, headers=ADMIN)
        transaction = client.get(f"{order_url}/transactions", headers=CUSTOMER).json()["data"][0]
        tx_url = f"/transactions/{transaction['id']}"

        response = client.patch(
            f"{tx_url}/bayar",
            json={"file_screenshot": "bukti.jpg", "payment_method": "QRIS"},
            headers=CUSTOMER
        )
        assert response.status_code == 200

        response = client.patch(f"{tx_url}/terima-pembayaran", headers=ADMIN)
        assert response.json()["data"]["status"] == "LUNAS"
        assert client.get(order_url, headers=CUSTOMER).json()["data"]["status"] == "SELESAI"

    def test_resend_when_not_rejected_409(self, client):
        response = client.post("/transactions", json={"user_id": 1, "total_harga": 500}, headers=ADMIN)
        transaction = response.json()["data"]

        response = client.patch(
            f"/transactions/{transaction['id']}/resend-pembayaran",
            json={},
            headers=CUSTOMER
        )
        assert response.status_code == 409

    def test_submit_by_stranger_403(self, client):
        transaction = client.post(
            "/transactions", json={"user_id": 1, "total_harga": 500}, headers=ADMIN
        ).json()["data"]

        response = client.patch(
            f"/transactions/{transaction['id']}/bayar",
            json={"file_screenshot": "bukti.jpg", "payment_method": "BCA"},
            headers=STRANGER
        )
        assert response.status_code == 403

    def test_soft_then_hard_delete(self, client):
        transaction = client.post(
            "/transactions", json={"user_id": 1, "total_harga": 500}, headers=ADMIN
        ).json()["data"]
        tx_url = f"/transactions/{transaction['id']}"

        assert client.patch(f"{tx_url}/soft-delete", headers=ADMIN).status_code == 200
        assert client.get(tx_url, headers=CUSTOMER).status_code == 404

        response = client.delete(tx_url, headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["data"]["id"] == transaction["id"]


class TestOperationalRoutes:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics(self, client):
        _create_order(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "custom_order_transitions_total" in response.text
