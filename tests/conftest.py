import pytest

from app import create_app
from notifier import EventNotifier
from order_store import OrderStore
from settings import NotifierConfig, Settings

ADMIN_USERNAME = "store-admin"
ADMIN_PASSWORD = "s3cret-pass"


class RecordingNotifier(EventNotifier):
    """Runs dispatch inline and keeps every event instead of posting it."""

    def __init__(self):
        super().__init__(NotifierConfig(), http=object(), dispatcher=lambda task: task())
        self.events = []

    def send(self, event, event_name="CompletePayment"):
        self.events.append(event)
        return True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        secret_key="test-secret",
        database_path=str(tmp_path / "orders.db"),
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        admin_email="admin@example.com",
    )


@pytest.fixture
def store(tmp_path):
    order_store = OrderStore(str(tmp_path / "store.db"))
    order_store.init_db()
    return order_store


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(settings, notifier):
    flask_app = create_app(settings, notifier=notifier)
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(client):
    response = client.post(
        "/admin/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200
    return client


def order_payload(**overrides):
    payload = {
        "name": "Rahim Uddin",
        "mobile": "01711111111",
        "address": "House 12, Road 5, Dhanmondi, Dhaka",
        "product": ["drop-shoulder-black"],
        "size": ["L"],
        "quantity": 3,
        "location": "far",
    }
    payload.update(overrides)
    return payload
