import pytest

from session_replay.app import create_app
from session_replay.config import ServerConfig, recording_config_from_dict
from session_replay.ledger import SessionLedger
from session_replay.models import create_event, event_to_dict
from session_replay.storage import EventStore

BASE_TS = 1_700_000_000_000  # ms, 2023-11-14


class FakeClock:
    """Callable wall clock (seconds) that tests move by hand."""

    def __init__(self, start=BASE_TS / 1000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_event(session_id="sess-1", i=0, event_type="MOUSE_CLICK", **kwargs):
    """Build a valid event; *i* makes the id and timestamp unique."""
    data = kwargs.pop("data", None)
    position = kwargs.pop("position", None)
    if data is None:
        data = {
            "MOUSE_CLICK": {"button": 0, "target": "button.buy"},
            "MOUSE_MOVE": {"buttons": 0},
            "INPUT": {"target": "input#email", "value": "secret@example.com"},
            "SCROLL": {"scrollX": 0, "scrollY": 120},
            "VIEWPORT": {"width": 1280, "height": 800},
            "DOM_MUTATION": {"mutation": "characterData", "target": "span", "text": "hello"},
            "ERROR": {"message": "boom"},
        }[event_type]
    if position is None and event_type in ("MOUSE_CLICK", "MOUSE_MOVE"):
        position = {"x": 10, "y": 20}
    return create_event(
        session_id=session_id,
        event_type=event_type,
        data=data,
        position=position,
        timestamp=kwargs.pop("timestamp", BASE_TS + i),
        event_id=kwargs.pop("event_id", f"{session_id}-evt-{i}"),
    )


def make_body(session_id="sess-1", count=3, start=0, application_id=None):
    """Build an ingest request body with *count* events."""
    body = {
        "sessionId": session_id,
        "events": [event_to_dict(make_event(session_id, start + i)) for i in range(count)],
    }
    if application_id is not None:
        body["applicationId"] = application_id
    return body


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = EventStore(str(tmp_path / "events.db"))
    yield s
    s.close()


@pytest.fixture
def ledger(store, clock):
    return SessionLedger(store, retention_days=30, max_events_per_session=10, time_func=clock)


@pytest.fixture
def recording_config():
    return recording_config_from_dict({
        "applicationId": "app-1",
        "networkConfig": {
            "endpoint": "http://ingest.test/api/events",
            "batchSize": 5,
            "flushInterval": 60000,
            "retryAttempts": 3,
            "retryDelay": 10,
            "authToken": "token-123",
        },
    })


@pytest.fixture
def server_config(tmp_path):
    return ServerConfig(
        jwt_secret="test-secret",
        app_env="test",
        data_dir=str(tmp_path),
        db_name="ingest",
        enable_request_logging=False,
        max_events_per_session=20,
        rate_limit_max_requests=100,
    )


@pytest.fixture
def app(server_config, clock):
    """Create a Flask test app."""
    application = create_app(server_config, time_func=clock)
    yield application
    application.config["components"]["store"].close()


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()


@pytest.fixture
def token(app):
    return app.config["components"]["authenticator"].issue("app-1")


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}
