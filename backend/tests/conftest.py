import itertools
import os
import sys
import pytest

# Ensure the backend root (containing the `articphone` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from articphone import create_app, db, get_store, socketio
from articphone.services.session.room import create_room, join_room, start_game


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    CORS_ORIGINS = ['http://localhost:5173']
    MIN_PLAYERS = 2
    DEFAULT_BASE_TIME = 60
    ADVANCE_GRACE_SEC = 0
    SOLO_STRAGGLER_THRESHOLD_SEC = 5
    OFFLINE_THRESHOLD_SEC = 60


class KeepOrder:
    """Stand-in for ``random`` that leaves the join order as the play order."""

    def shuffle(self, seq):
        return None


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import articphone.models  # noqa: F401
        db.create_all()
    # Requests must get their own app context (and Flask-Login user cache)
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def store(flask_app):
    """The app's store, with an app context held open for direct engine calls.

    Tests that drive HTTP clients should use ``get_store(flask_app)`` instead.
    """
    with flask_app.app_context():
        yield get_store(flask_app)


@pytest.fixture()
def make_room(store):
    """Seat players in join order; start the game unless ``start=False``.

    Returns ``(room_code, player_ids)``; play order equals join order.
    """
    def _make(names, settings=None, start=True):
        room = create_room(store, settings=settings)
        ids = []
        for i, name in enumerate(names):
            player_id = f"p-{name.lower()}"
            join_room(store, room.code, player_id, name, joined_at=1000 + i)
            ids.append(player_id)
        if start:
            start_game(store, room.code, ids[0], rng=KeepOrder())
        return room.code, ids
    return _make


@pytest.fixture()
def ticking_clock(monkeypatch):
    """Give each HTTP join its own timestamp so join order is deterministic."""
    from articphone.services.session import room as room_module
    ticks = itertools.count(1_000_000, 1000)
    monkeypatch.setattr(room_module, 'now_ms', lambda: next(ticks))


@pytest.fixture()
def signed_in(flask_app):
    """Factory for HTTP clients each holding their own anonymous identity."""
    def _sign_in():
        test_client = flask_app.test_client()
        res = test_client.post('/api/identity/anonymous')
        assert res.status_code == 201
        return test_client, res.get_json()['uid']
    return _sign_in


@pytest.fixture()
def sio_client(flask_app, client):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=client,
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')
