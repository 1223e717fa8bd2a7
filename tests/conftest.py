"""
Shared pytest fixtures for gtfs-analyze tests

Provides fixtures for:
- Database setup/teardown with in-memory SQLite
- FastAPI test client
- Sample static feeds and GTFS files
- Environment variable mocking
"""

from datetime import datetime, timedelta
from typing import Generator
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from api.main import app
from gtfs_analyze.database import get_db
from gtfs_analyze.models import (
    Agency,
    Base,
    Calendar,
    FeedInfo,
    Route,
    StaticFeed,
    Stop,
    StopTime,
    Trip,
    VehiclePosition,
)

DENVER = ZoneInfo("America/Denver")

# Thursday and Friday
FIRST_DAY = datetime(2023, 6, 8).date()
SECOND_DAY = datetime(2023, 6, 9).date()


@pytest.fixture(scope="session")
def test_engine():
    """
    Create an in-memory SQLite engine for testing

    Session-scoped so it's created once for all tests. StaticPool keeps a single
    connection so the API's worker threads see the same database.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """
    Create a new database session for a test with transaction rollback

    Function-scoped so each test gets a clean database state
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="function")
def client(db_session):
    """
    FastAPI TestClient with database dependency override

    All API requests will use the test database session
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_static_feed(version: str = "v1", timezone: str = "America/Denver") -> StaticFeed:
    """
    A one-trip weekday feed:

    trip1 (service wkdayService, Monday-Friday)
      stop1 arrives 08:30:00
      stop2 arrives 08:45:00
    """
    feed = StaticFeed(
        feed_info=FeedInfo(version=version, download_time=datetime(2023, 6, 1, 12, 0)),
        agencies=[
            Agency(agency_id="RTD", agency_name="Test Transit", agency_timezone=timezone),
        ],
        stops=[
            Stop(stop_id="stop1", stop_name="First Stop", stop_lat=39.7392, stop_lon=-104.9903),
            Stop(stop_id="stop2", stop_name="Second Stop", stop_lat=39.7500, stop_lon=-104.9990),
        ],
        routes=[
            Route(route_id="route1", agency_id="RTD", route_short_name="1", route_type=3),
        ],
        trips=[
            Trip(trip_id="trip1", route_id="route1", service_id="wkdayService", direction_id=0),
        ],
        stop_times=[
            StopTime(trip_id="trip1", stop_id="stop1", stop_sequence=1, arrival_time=30600, departure_time=30600),
            StopTime(trip_id="trip1", stop_id="stop2", stop_sequence=2, arrival_time=31500, departure_time=31500),
        ],
        calendars=[
            Calendar(
                service_id="wkdayService",
                monday=1,
                tuesday=1,
                wednesday=1,
                thursday=1,
                friday=1,
                saturday=0,
                sunday=0,
                start_date="20230101",
                end_date="20231231",
            ),
        ],
    )
    for record in feed.all_records():
        record.version = version
    return feed


@pytest.fixture
def static_feed() -> StaticFeed:
    """Create and return the one-trip weekday feed (not persisted)"""
    return make_static_feed()


@pytest.fixture
def stored_feed(db_session) -> StaticFeed:
    """Create, persist and return the one-trip weekday feed"""
    feed = make_static_feed()
    db_session.add_all(feed.all_records())
    db_session.commit()
    return feed


def make_vehicle_position(
    position_timestamp: datetime,
    stop_id: str,
    current_status: int,
    trip_id: str = "trip1",
    entity_id: str = "vehicle-1",
) -> VehiclePosition:
    """A stored-style position: naive UTC timestamp, message timestamp in epoch seconds"""
    if position_timestamp.tzinfo is not None:
        position_timestamp = position_timestamp.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)
    epoch = int((position_timestamp - datetime(1970, 1, 1)).total_seconds())
    return VehiclePosition(
        entity_id=entity_id,
        message_timestamp=epoch,
        trip_id=trip_id,
        route_id="route1",
        vehicle_id=entity_id,
        stop_id=stop_id,
        current_status=current_status,
        latitude=39.7392,
        longitude=-104.9903,
        position_timestamp=position_timestamp,
    )


@pytest.fixture
def sample_vehicle_positions(db_session, stored_feed) -> list[VehiclePosition]:
    """
    Create and return positions for trip1 on FIRST_DAY:
    stopped at stop1 at 08:32 and at stop2 at 08:44 (both on time)
    """
    base = datetime(2023, 6, 8, 8, 0, tzinfo=DENVER)
    positions = [
        make_vehicle_position(base + timedelta(minutes=32), "stop1", 1),
        make_vehicle_position(base + timedelta(minutes=44), "stop2", 1),
    ]
    db_session.add_all(positions)
    db_session.commit()
    return positions


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """
    Mock environment variables for tests

    autouse=True means this runs for every test automatically
    """
    # Use in-memory SQLite for tests (overridden by db_session fixture)
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "info")
    # Prevent accidental real API calls
    monkeypatch.setenv("GTFS_API_KEY", "test_api_key_do_not_use")
    monkeypatch.delenv("STATIC_GTFS_URL", raising=False)
    monkeypatch.delenv("VEHICLE_POSITIONS_URL", raising=False)


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b""):
        self.status_code = status_code
        self.content = content


class FakeHttp:
    """Stands in for requests.get: returns `response` (or raises `error`), records calls"""

    def __init__(self):
        self.response = FakeResponse()
        self.error = None
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def fake_http(monkeypatch) -> FakeHttp:
    """Replace requests.get so feed downloads never reach the network"""
    stub = FakeHttp()
    monkeypatch.setattr("requests.get", stub)
    return stub
