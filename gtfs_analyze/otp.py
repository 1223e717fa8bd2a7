"""
On-time performance (OTP) calculation

Reconciles GTFS-RT vehicle positions against the static schedule:

1. The static feed is indexed once (calendars by service id, stop times by trip id)
2. The first time a position lands on a calendar date, every trip running that
   weekday is expanded into a TripInstance with localized scheduled arrivals
3. Each position report backfills actual arrival times for the stops the vehicle
   has already serviced, walking backward until it reaches a stop that an
   earlier report already resolved
4. The summary compares actual vs. scheduled arrival for every stop scheduled
   inside the requested window and reports, per trip:

    on-time performance = # of stops where service was on time / # of stops considered

All state lives in one OtpCalculation guarded by a single lock, so a position
ingestion loop and on-demand summaries can share it.
"""

import enum
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from operator import attrgetter
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd
from sqlalchemy.orm import Session

from gtfs_analyze.exceptions import InvalidFeed, InvalidReport, StopNotFound, TripNotFound
from gtfs_analyze.models import Calendar, StaticFeed, StopTime, VehiclePosition
from gtfs_analyze.storage import get_feed_on_date, get_vehicle_positions

logger = logging.getLogger(__name__)


class VehicleStopStatus(enum.IntEnum):
    """GTFS-RT VehiclePosition.VehicleStopStatus, same numbering as the protobuf enum"""

    INCOMING_AT = 0
    STOPPED_AT = 1
    IN_TRANSIT_TO = 2


class GroupBy(str, enum.Enum):
    TRIP_ID = "TripId"


@dataclass(frozen=True)
class PositionReport:
    """One vehicle position, reduced to what the OTP calculation needs"""

    trip_id: str
    stop_id: str
    current_status: VehicleStopStatus
    position_time: datetime  # timezone-aware

    @classmethod
    def from_vehicle_position(cls, position: VehiclePosition) -> "PositionReport":
        # Stored timestamps are naive UTC
        position_time = position.position_timestamp
        if position_time.tzinfo is None:
            position_time = position_time.replace(tzinfo=timezone.utc)

        # IN_TRANSIT_TO is the protobuf default when the field is absent
        status = position.current_status
        if status is None:
            status = VehicleStopStatus.IN_TRANSIT_TO

        return cls(
            trip_id=position.trip_id,
            stop_id=position.stop_id,
            current_status=VehicleStopStatus(status),
            position_time=position_time,
        )


@dataclass
class StopVisit:
    stop_id: str
    scheduled_arrival: Optional[datetime]  # None for untimed stops
    actual_arrival: Optional[datetime] = None  # None until observed


@dataclass
class TripInstance:
    """A scheduled trip on one calendar date"""

    trip_id: str
    stop_visits: list[StopVisit] = field(default_factory=list)
    has_started_tracking: bool = False


@dataclass
class TimetableIndex:
    """Lookup tables over a static feed, built once per calculation"""

    calendar_by_service_id: dict[str, Calendar]
    stop_times_by_trip_id: dict[str, list[StopTime]]

    @classmethod
    def from_feed(cls, feed: StaticFeed) -> "TimetableIndex":
        if not feed.agencies:
            raise InvalidFeed("Cannot look up agency timezone: feed has no agency")

        calendar_by_service_id = {calendar.service_id: calendar for calendar in feed.calendars}

        stop_times_by_trip_id = defaultdict(list)
        for stop_time in feed.stop_times:
            stop_times_by_trip_id[stop_time.trip_id].append(stop_time)

        # list.sort is stable, so duplicate sequences keep file order
        for stop_times in stop_times_by_trip_id.values():
            stop_times.sort(key=attrgetter("stop_sequence"))

        return cls(
            calendar_by_service_id=calendar_by_service_id,
            stop_times_by_trip_id=dict(stop_times_by_trip_id),
        )


def resolve_agency_timezone(feed: StaticFeed) -> ZoneInfo:
    """Timezone of the first agency in the feed"""
    if not feed.agencies:
        raise InvalidFeed("Cannot look up agency timezone: feed has no agency")

    timezone_name = feed.agencies[0].agency_timezone
    if not timezone_name:
        raise InvalidFeed("First agency in feed has no agency_timezone")
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidFeed(f"Unknown agency timezone {timezone_name!r}") from e


@dataclass(frozen=True)
class OtpSummaryEntry:
    name: str  # Depends on the grouping, currently always a trip id
    on_time_performance: float  # 0.0 - 1.0


@dataclass
class OtpSummary:
    group_by: GroupBy
    entries: list[OtpSummaryEntry] = field(default_factory=list)

    def to_dataframe(self) -> pd.DataFrame:
        """Entries sorted by name, OTP as a percentage"""
        entries = sorted(self.entries, key=attrgetter("name"))
        return pd.DataFrame(
            {
                self.group_by.value: [entry.name for entry in entries],
                "OTP": [entry.on_time_performance * 100 for entry in entries],
            }
        )

    def pretty_print(self) -> str:
        if not self.entries:
            return f"No {self.group_by.value} with real-time data in range"
        return self.to_dataframe().to_string(index=False, float_format=lambda v: f"{v:.2f}")

    def to_dict(self) -> dict:
        return {
            "group_by": self.group_by.value,
            "entries": [
                {"name": entry.name, "on_time_performance": entry.on_time_performance}
                for entry in sorted(self.entries, key=attrgetter("name"))
            ],
        }


class OtpCalculation:
    """
    In-memory OTP state for one static feed.

    Args:
        feed: Parsed static feed. Must contain at least one agency with a valid timezone.
        report_timezone: Zone used to pick the calendar date of a position report.
            Defaults to the timezone carried by each report's own timestamp.

    Raises:
        InvalidFeed: If the feed has no agency or the agency timezone is unknown
    """

    def __init__(self, feed: StaticFeed, report_timezone: Optional[tzinfo] = None):
        if feed is None:
            raise InvalidFeed("Must provide a feed")

        self.feed = feed
        self.index = TimetableIndex.from_feed(feed)
        self.location = resolve_agency_timezone(feed)
        self.report_timezone = report_timezone
        self.trips_by_date: dict[date, dict[str, TripInstance]] = {}
        self.lock = threading.Lock()

    # Day expansion

    def populate_trips_for_date(self, day: date) -> None:
        with self.lock:
            self._populate_trips_for_date(day)

    def _populate_trips_for_date(self, day: date) -> None:
        if day in self.trips_by_date:
            return

        trips_for_date = {}
        for trip in self.feed.trips:
            calendar = self.index.calendar_by_service_id.get(trip.service_id)
            if calendar is None:
                logger.warning(
                    "Cannot find calendar with service id %s, required for trip %s",
                    trip.service_id,
                    trip.trip_id,
                )
                continue

            # Calendar start_date/end_date are not consulted, only the weekday flags
            if not calendar.runs_on_weekday(day.weekday()):
                continue

            stop_times = self.index.stop_times_by_trip_id.get(trip.trip_id)
            if not stop_times:
                logger.warning("Cannot find stop times for trip %s", trip.trip_id)
                continue

            trips_for_date[trip.trip_id] = TripInstance(
                trip_id=trip.trip_id,
                stop_visits=[
                    StopVisit(
                        stop_id=stop_time.stop_id,
                        scheduled_arrival=self._scheduled_arrival(day, stop_time),
                    )
                    for stop_time in stop_times
                ],
            )

        self.trips_by_date[day] = trips_for_date
        logger.debug("Populated %d trips for %s", len(trips_for_date), day.isoformat())

    def _scheduled_arrival(self, day: date, stop_time: StopTime) -> Optional[datetime]:
        offset = stop_time.arrival_time
        if offset is None:
            offset = stop_time.departure_time
        if offset is None:
            return None

        # Elapsed seconds since local midnight, added in UTC so DST days keep real durations
        midnight = datetime.combine(day, time(0), tzinfo=self.location)
        scheduled = midnight.astimezone(timezone.utc) + timedelta(seconds=offset)
        return scheduled.astimezone(self.location)

    # Arrival inference

    def infer_trip_date(self, report: PositionReport) -> date:
        # TODO: use the static schedule and the report time to pick the service day.
        # The observation's own calendar date is wrong for trips running past midnight.
        position_time = report.position_time
        if self.report_timezone is not None:
            position_time = position_time.astimezone(self.report_timezone)
        return position_time.date()

    def apply_report(self, report: PositionReport) -> int:
        """
        Backfill actual arrivals from one position report.

        Returns:
            Number of stops marked by this report

        Raises:
            InvalidReport: If the report time is naive
            TripNotFound: If the trip doesn't run on the report's date
            StopNotFound: If the stop isn't on the trip
        """
        with self.lock:
            return self._apply_report(report)

    def apply_reports(self, reports: Iterable[PositionReport]) -> int:
        """
        Apply a batch of position reports in order under one lock acquisition.

        Reports that are naive or name an unknown trip or stop are logged and
        discarded; the rest of the batch is still applied.

        Returns:
            Number of reports applied
        """
        applied = 0
        with self.lock:
            for report in reports:
                try:
                    self._apply_report(report)
                except (InvalidReport, TripNotFound, StopNotFound) as e:
                    logger.warning("Discarding position report: %s", e)
                    continue
                applied += 1
        return applied

    def on_new_position_data(self, positions: Iterable[VehiclePosition]) -> int:
        """Apply stored GTFS-RT vehicle positions"""
        return self.apply_reports(
            PositionReport.from_vehicle_position(position) for position in positions
        )

    def _apply_report(self, report: PositionReport) -> int:
        if report.position_time.tzinfo is None:
            raise InvalidReport(
                f"Position time {report.position_time.isoformat()} for trip {report.trip_id} has no timezone"
            )

        day = self.infer_trip_date(report)
        if day not in self.trips_by_date:
            self._populate_trips_for_date(day)

        trip = self.trips_by_date[day].get(report.trip_id)
        if trip is None:
            raise TripNotFound(report.trip_id, day.isoformat())

        return self._mark_arrival_times(
            trip,
            report.stop_id,
            report.position_time,
            include_this_stop=report.current_status == VehicleStopStatus.STOPPED_AT,
        )

    def _mark_arrival_times(
        self, trip: TripInstance, stop_id: str, position_time: datetime, include_this_stop: bool
    ) -> int:
        """
        Mark position_time as the actual arrival of stop_id (if include_this_stop)
        and of every unmarked stop before it, walking backward.
        """
        stop_index = next(
            (i for i, visit in enumerate(trip.stop_visits) if visit.stop_id == stop_id), None
        )
        if stop_index is None:
            raise StopNotFound(trip.trip_id, stop_id)

        start_index = stop_index if include_this_stop else stop_index - 1

        marked = 0
        for visit in reversed(trip.stop_visits[: start_index + 1]):
            # Everything before a marked stop was resolved by an earlier report
            if visit.actual_arrival is not None:
                break
            visit.actual_arrival = position_time
            marked += 1

            # The first observation of a trip only marks a single stop
            if not trip.has_started_tracking:
                trip.has_started_tracking = True
                break
        return marked

    # Summary

    def summarize_on_time_performance_by_trip(
        self, on_time_threshold: timedelta, start_time: datetime, end_time: datetime
    ) -> OtpSummary:
        """
        Summarize on-time performance by trip id.

        Only stops scheduled strictly between start_time and end_time count. A stop
        is on time when |actual - scheduled| < |on_time_threshold|. Trips that never
        received a position report are left out of the summary entirely.
        """
        if start_time.tzinfo is None or end_time.tzinfo is None:
            raise ValueError("start_time and end_time must be timezone-aware")

        threshold = abs(on_time_threshold)
        num_stops_on_time_by_trip_id = defaultdict(int)
        num_stops_total_by_trip_id = defaultdict(int)

        with self.lock:
            for trips in self.trips_by_date.values():
                for trip_id, trip in trips.items():
                    # No real-time signal, can't be scored
                    if not trip.has_started_tracking:
                        continue
                    for visit in trip.stop_visits:
                        scheduled = visit.scheduled_arrival
                        if scheduled is None or not start_time < scheduled < end_time:
                            continue
                        num_stops_total_by_trip_id[trip_id] += 1
                        if (
                            visit.actual_arrival is not None
                            and abs(visit.actual_arrival - scheduled) < threshold
                        ):
                            num_stops_on_time_by_trip_id[trip_id] += 1

        entries = []
        for trip_id, num_stops_total in num_stops_total_by_trip_id.items():
            num_stops_on_time = num_stops_on_time_by_trip_id.get(trip_id, 0)
            entries.append(OtpSummaryEntry(trip_id, num_stops_on_time / num_stops_total))

        return OtpSummary(group_by=GroupBy.TRIP_ID, entries=entries)


def calculate_otp_for_time_range(
    db: Session,
    start_time: datetime,
    end_time: datetime,
    on_time_threshold: timedelta,
    report_timezone: Optional[tzinfo] = None,
) -> OtpSummary:
    """
    Calculate OTP from stored vehicle positions and the stored static feed

    Args:
        db: Database session
        start_time: Start of analysis period (timezone-aware)
        end_time: End of analysis period (timezone-aware)
        on_time_threshold: Maximum |actual - scheduled| for a stop to count as on time
        report_timezone: Zone used to assign position reports to calendar dates

    Returns:
        OtpSummary grouped by trip id

    Raises:
        FeedNotFound: If no static feed is stored
        InvalidFeed: If the stored feed has no usable agency timezone
    """
    logger.debug(
        "Calculating OTP for time range %s to %s with threshold %s",
        start_time.isoformat(),
        end_time.isoformat(),
        on_time_threshold,
    )

    positions = get_vehicle_positions(db, start_time, end_time)
    logger.debug("Found %d vehicle position updates", len(positions))

    # TODO: load the feed version in force on each day of a multi-day range
    feed = get_feed_on_date(db, start_time.date())

    calculation = OtpCalculation(feed, report_timezone=report_timezone)
    calculation.on_new_position_data(positions)

    return calculation.summarize_on_time_performance_by_trip(on_time_threshold, start_time, end_time)
