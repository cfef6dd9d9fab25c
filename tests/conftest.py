import pytest

from cache import CacheCoordinator, ResponseCache
from handlers import OrderService
from models import Requester
from orders import OrderLifecycleEngine
from payments import PaymentWorkflowEngine
from tests.fakes import InMemoryGateway, RecordingNotifier


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def orders(gateway):
    return OrderLifecycleEngine(gateway)


@pytest.fixture
def payments(gateway):
    return PaymentWorkflowEngine(gateway)


@pytest.fixture
def cache_backend():
    return CacheCoordinator()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(orders, payments, cache_backend, notifier):
    return OrderService(orders, payments, ResponseCache(cache_backend), notifier)


@pytest.fixture
def customer():
    return Requester.customer(1)


@pytest.fixture
def other_customer():
    return Requester.customer(2)


@pytest.fixture
def admin():
    return Requester.admin(99)
