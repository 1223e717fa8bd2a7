from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Every static GTFS table carries the feed version it was loaded from, so several
# versions of the same feed can live side by side in one database.


class FeedInfo(Base):
    """
    GTFS feed_info data, one row per stored feed version.

    If the feed ships no feed_info.txt (or no feed_version), the version is the
    MD5 hash of the parsed files, so a feed that didn't change is never stored twice.
    """

    __tablename__ = "feed_info"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, unique=True, nullable=False, index=True)
    feed_publisher_name = Column(String)
    feed_publisher_url = Column(String)
    feed_lang = Column(String)
    default_lang = Column(String)
    feed_start_date = Column(String)  # YYYYMMDD format
    feed_end_date = Column(String)  # YYYYMMDD format
    feed_contact_email = Column(String)
    feed_contact_url = Column(String)
    download_time = Column(DateTime, nullable=False, index=True)  # naive UTC
    created_at = Column(DateTime, default=datetime.utcnow)


class Agency(Base):
    """GTFS agency data (transit agency information)"""

    __tablename__ = "agencies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, ForeignKey("feed_info.version"), nullable=False, index=True)
    agency_id = Column(String)
    agency_name = Column(String)
    agency_url = Column(String)
    agency_timezone = Column(String)
    agency_lang = Column(String)
    agency_phone = Column(String)
    agency_fare_url = Column(String)
    agency_email = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("version", "agency_id", name="uq_agency_version"),)


class Calendar(Base):
    """GTFS calendar data (service schedules by day of week)"""

    __tablename__ = "calendar"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, ForeignKey("feed_info.version"), nullable=False, index=True)
    service_id = Column(String, nullable=False, index=True)
    monday = Column(Integer, nullable=False)  # 0 or 1
    tuesday = Column(Integer, nullable=False)
    wednesday = Column(Integer, nullable=False)
    thursday = Column(Integer, nullable=False)
    friday = Column(Integer, nullable=False)
    saturday = Column(Integer, nullable=False)
    sunday = Column(Integer, nullable=False)
    start_date = Column(String)  # YYYYMMDD format
    end_date = Column(String)  # YYYYMMDD format
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("version", "service_id", name="uq_calendar_version"),)

    def runs_on_weekday(self, weekday: int) -> bool:
        """weekday follows date.weekday(): Monday is 0, Sunday is 6"""
        flags = (
            self.monday,
            self.tuesday,
            self.wednesday,
            self.thursday,
            self.friday,
            self.saturday,
            self.sunday,
        )
        return flags[weekday] == 1


class Route(Base):
    """GTFS static route data"""

    __tablename__ = "routes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, ForeignKey("feed_info.version"), nullable=False, index=True)
    route_id = Column(String, nullable=False, index=True)
    agency_id = Column(String)
    route_short_name = Column(String)
    route_long_name = Column(String)
    route_desc = Column(String)
    route_type = Column(Integer)
    route_url = Column(String)
    route_color = Column(String)
    route_text_color = Column(String)
    route_sort_order = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("version", "route_id", name="uq_route_version"),)


class Stop(Base):
    """GTFS static stop data"""

    __tablename__ = "stops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, ForeignKey("feed_info.version"), nullable=False, index=True)
    stop_id = Column(String, nullable=False, index=True)
    stop_code = Column(String)
    stop_name = Column(String)
    stop_desc = Column(String)
    stop_lat = Column(Float)
    stop_lon = Column(Float)
    zone_id = Column(String)
    stop_url = Column(String)
    location_type = Column(Integer, default=0)
    parent_station = Column(String)
    stop_timezone = Column(String)
    wheelchair_boarding = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("version", "stop_id", name="uq_stop_version"),)


class Trip(Base):
    """GTFS static trip data"""

    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, ForeignKey("feed_info.version"), nullable=False, index=True)
    trip_id = Column(String, nullable=False, index=True)
    route_id = Column(String, index=True)
    service_id = Column(String)
    trip_headsign = Column(String)
    trip_short_name = Column(String)
    direction_id = Column(Integer)
    block_id = Column(String, index=True)  # Links trips that use the same vehicle
    shape_id = Column(String)
    wheelchair_accessible = Column(Integer)
    bikes_allowed = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("version", "trip_id", name="uq_trip_version"),)


class StopTime(Base):
    """
    GTFS static stop_times data (scheduled stops)

    arrival_time and departure_time are stored as seconds after midnight of the
    service day. They can be greater than 86400 for service running past midnight.
    """

    __tablename__ = "stop_times"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, ForeignKey("feed_info.version"), nullable=False, index=True)
    trip_id = Column(String, nullable=False, index=True)
    stop_id = Column(String, nullable=False, index=True)
    arrival_time = Column(Integer)
    departure_time = Column(Integer)
    stop_sequence = Column(Integer, nullable=False)
    stop_headsign = Column(String)
    pickup_type = Column(Integer, default=0)
    drop_off_type = Column(Integer, default=0)
    shape_dist_traveled = Column(Float)
    timepoint = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_version_trip_sequence", "version", "trip_id", "stop_sequence"),)


class VehiclePosition(Base):
    """Real-time vehicle position data from GTFS-RT"""

    __tablename__ = "vehicle_positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(String, nullable=False)  # Feed-unique id of the FeedEntity
    message_timestamp = Column(Integer, nullable=False, index=True)  # FeedHeader timestamp (epoch)

    # Trip descriptor. No foreign key to trips: GTFS-RT and GTFS static are
    # distinct feeds and the reference can legitimately dangle.
    trip_id = Column(String, index=True)
    route_id = Column(String, index=True)
    direction_id = Column(Integer)  # 0 or 1 for trip direction
    trip_start_time = Column(Integer)  # seconds after midnight, can be > 24 hours
    trip_start_date = Column(String)  # YYYYMMDD format
    schedule_relationship = Column(Integer)  # 0=scheduled, 1=added, 2=unscheduled, 3=canceled

    # Vehicle descriptor
    vehicle_id = Column(String, index=True)
    vehicle_label = Column(String)
    license_plate = Column(String)

    # Position data
    latitude = Column(Float)
    longitude = Column(Float)
    bearing = Column(Float)  # Direction vehicle is facing (0-360 degrees)
    odometer = Column(Float)
    speed = Column(Float)  # Speed in meters/second

    # Stop information
    current_stop_sequence = Column(Integer)
    stop_id = Column(String)  # Current or next stop
    current_status = Column(Integer)  # 0=incoming, 1=stopped, 2=in_transit

    # Additional data
    congestion_level = Column(Integer)
    occupancy_status = Column(Integer)  # Passenger load (0-8 scale)
    occupancy_percentage = Column(Integer)

    # Timestamps
    position_timestamp = Column(DateTime, nullable=False, index=True)  # naive UTC
    collected_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("entity_id", "message_timestamp", name="uq_entity_message"),
        Index("idx_trip_timestamp", "trip_id", "position_timestamp"),
    )


@dataclass
class StaticFeed:
    """
    A fully parsed static GTFS feed, as handed to the OTP calculation.

    Records are transient model instances until written with storage.store_static_feed,
    or persistent instances when loaded back with storage.get_feed_on_date.
    """

    feed_info: FeedInfo
    agencies: list[Agency] = field(default_factory=list)
    stops: list[Stop] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    trips: list[Trip] = field(default_factory=list)
    stop_times: list[StopTime] = field(default_factory=list)
    calendars: list[Calendar] = field(default_factory=list)

    @property
    def version(self) -> str:
        return self.feed_info.version

    def all_records(self) -> list:
        """Every record of the feed, feed_info first"""
        return [
            self.feed_info,
            *self.agencies,
            *self.stops,
            *self.routes,
            *self.trips,
            *self.stop_times,
            *self.calendars,
        ]
