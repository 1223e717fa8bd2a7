"""
Persistence for static GTFS feeds and GTFS-RT vehicle positions

Static feeds are stored whole, one version at a time: a version that is already
in the database is never written again. Vehicle positions are appended in one
transaction per batch, skipping (entity_id, message_timestamp) pairs that are
already stored.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from gtfs_analyze.exceptions import FeedNotFound
from gtfs_analyze.models import (
    Agency,
    Calendar,
    FeedInfo,
    Route,
    StaticFeed,
    Stop,
    StopTime,
    Trip,
    VehiclePosition,
)
from gtfs_analyze.static_reader import parse_static_gtfs_from_path, parse_static_gtfs_from_url

logger = logging.getLogger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC; naive input is assumed to be UTC already"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def does_feed_exist(db: Session, version: str) -> bool:
    return db.query(FeedInfo.id).filter(FeedInfo.version == version).first() is not None


def store_static_feed(db: Session, feed: StaticFeed) -> bool:
    """
    Write a parsed static feed to the database in a single transaction

    Returns:
        True if the feed was written, False if its version was already stored
    """
    if does_feed_exist(db, feed.version):
        logger.warning("Feed version %s already exists in database", feed.version)
        return False

    try:
        db.add_all(feed.all_records())
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Stored feed version %s: %d trips, %d stop times, %d calendars",
        feed.version,
        len(feed.trips),
        len(feed.stop_times),
        len(feed.calendars),
    )
    return True


def get_feed_on_date(db: Session, day: date) -> StaticFeed:
    """
    Load the static feed in force on a given date

    Picks the most recently downloaded version that was downloaded before the end
    of `day`. If every stored version was downloaded later, the earliest one is used.

    Raises:
        FeedNotFound: If no feed is stored at all
    """
    end_of_day = datetime.combine(day + timedelta(days=1), time(0))
    feed_info = (
        db.query(FeedInfo)
        .filter(FeedInfo.download_time < end_of_day)
        .order_by(FeedInfo.download_time.desc())
        .first()
    )
    if feed_info is None:
        feed_info = db.query(FeedInfo).order_by(FeedInfo.download_time.asc()).first()
    if feed_info is None:
        raise FeedNotFound("No static GTFS feed stored in database")

    version = feed_info.version
    logger.debug("Using feed version %s for %s", version, day.isoformat())

    return StaticFeed(
        feed_info=feed_info,
        agencies=db.query(Agency).filter(Agency.version == version).order_by(Agency.id).all(),
        stops=db.query(Stop).filter(Stop.version == version).order_by(Stop.id).all(),
        routes=db.query(Route).filter(Route.version == version).order_by(Route.id).all(),
        trips=db.query(Trip).filter(Trip.version == version).order_by(Trip.id).all(),
        stop_times=db.query(StopTime).filter(StopTime.version == version).order_by(StopTime.id).all(),
        calendars=db.query(Calendar).filter(Calendar.version == version).order_by(Calendar.id).all(),
    )


def write_vehicle_positions(db: Session, positions: list[VehiclePosition]) -> int:
    """
    Save vehicle positions in one transaction

    Returns:
        Number of positions written (already stored entity/message pairs are skipped)
    """
    if not positions:
        return 0

    message_timestamps = {p.message_timestamp for p in positions}
    existing = {
        (entity_id, message_timestamp)
        for entity_id, message_timestamp in db.query(
            VehiclePosition.entity_id, VehiclePosition.message_timestamp
        ).filter(VehiclePosition.message_timestamp.in_(message_timestamps))
    }

    new_positions = []
    for position in positions:
        key = (position.entity_id, position.message_timestamp)
        if key in existing:
            continue
        existing.add(key)
        new_positions.append(position)

    try:
        db.add_all(new_positions)
        db.commit()
    except Exception:
        db.rollback()
        raise

    return len(new_positions)


def get_vehicle_positions(
    db: Session, start_time: Optional[datetime] = None, end_time: Optional[datetime] = None
) -> list[VehiclePosition]:
    """
    Get vehicle positions observed within a time range (inclusive), ordered by observation time

    Args:
        db: Database session
        start_time: Optional start of time range
        end_time: Optional end of time range
    """
    query = db.query(VehiclePosition)
    if start_time:
        query = query.filter(VehiclePosition.position_timestamp >= to_naive_utc(start_time))
    if end_time:
        query = query.filter(VehiclePosition.position_timestamp <= to_naive_utc(end_time))
    return query.order_by(VehiclePosition.position_timestamp, VehiclePosition.id).all()


def get_latest_message_timestamp(db: Session) -> int:
    """Newest stored GTFS-RT header timestamp, 0 if nothing is stored"""
    latest = db.query(func.max(VehiclePosition.message_timestamp)).scalar()
    return latest or 0


def store(
    db: Session,
    static_url: Optional[str] = None,
    static_path: Optional[str] = None,
    headers: Optional[dict] = None,
    timeout: float = 30,
) -> StaticFeed:
    """
    Parse a static GTFS feed from a URL or a local path and store it

    Exactly one of static_url and static_path must be given.

    Returns:
        The parsed feed (stored, or already present under the same version)
    """
    if (static_url is None) == (static_path is None):
        raise ValueError("Provide exactly one of static_url and static_path")

    if static_url is not None:
        logger.info("Downloading static GTFS from %s", static_url)
        feed = parse_static_gtfs_from_url(static_url, headers=headers, timeout=timeout)
    else:
        logger.info("Reading static GTFS from %s", static_path)
        feed = parse_static_gtfs_from_path(static_path)

    store_static_feed(db, feed)
    return feed
