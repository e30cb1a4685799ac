"""
Pytest configuration and fixtures for game service tests.
"""
import os
import random
import sys

import fakeredis
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from gameday.app import create_app
from gameday.collaborators import Principal
from gameday.models import db
from shared.clock import FixedClock
from tests.helpers import NOW, game_payload, phone


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(
        'testing',
        redis_client=fakeredis.FakeRedis(decode_responses=True),
        clock=FixedClock(NOW),
        rng=random.Random(7),
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def clock(app):
    """The service clock, reset to NOW for every test."""
    clock = app.coordinator.clock
    clock.set(NOW)
    return clock


@pytest.fixture(scope='function')
def db_session(app, clock):
    """Create database session for testing."""
    with app.app_context():
        # Clear all tables before each test
        db.session.remove()

        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.redis.flushall()

        yield db.session

        db.session.rollback()


@pytest.fixture
def coordinator(app, db_session):
    return app.coordinator


@pytest.fixture
def admin():
    return Principal('admin-1', ip_address='10.0.0.1', user_agent='pytest')


@pytest.fixture
def other_admin():
    return Principal('admin-2')


@pytest.fixture
def make_game(coordinator, admin):
    """Factory creating an open game owned by `admin`."""
    def _make(publish=True, **overrides):
        return coordinator.create_game(admin, game_payload(**overrides), publish=publish).value
    return _make


@pytest.fixture
def sample_game(make_game):
    return make_game()


@pytest.fixture
def register_players(coordinator, clock):
    """Register `count` players one minute apart; returns the admission results."""
    def _register(game, count, start=1):
        results = []
        for i in range(start, start + count):
            clock.advance(minutes=1)
            results.append(coordinator.register(game.share_token, f"Player {i}", phone(i)).value)
        return results
    return _register


@pytest.fixture
def full_game(sample_game, register_players):
    """A game with 10 confirmed players and one on the waitlist."""
    register_players(sample_game, 11)
    return sample_game


@pytest.fixture
def mock_event_bus(mocker, coordinator):
    """Replace the event bus with a mock."""
    bus = mocker.MagicMock()
    mocker.patch.object(coordinator, 'event_bus', bus)
    return bus
