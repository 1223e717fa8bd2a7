"""
GTFS-RT vehicle position reader

Fetches a GTFS-Realtime FeedMessage and converts each vehicle entity into a
VehiclePosition row. Optional protobuf fields that aren't set are stored as None.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from gtfs_analyze.exceptions import FeedParseError
from gtfs_analyze.models import VehiclePosition
from gtfs_analyze.static_reader import parse_gtfs_time

logger = logging.getLogger(__name__)


def _field(message, name: str):
    """Value of an optional protobuf field, None when unset"""
    return getattr(message, name) if message.HasField(name) else None


def _epoch_to_naive_utc(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


def decode_feed_message(content: bytes) -> gtfs_realtime_pb2.FeedMessage:
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(content)
    except DecodeError as e:
        raise FeedParseError(f"Invalid GTFS-RT message: {e}") from e
    return feed


def parse_vehicle_positions(content: bytes) -> list[VehiclePosition]:
    """
    Decode a GTFS-RT vehicle positions message

    Entities without a vehicle (trip updates, alerts) are skipped. Positions without
    their own timestamp fall back to the message header timestamp.

    Raises:
        FeedParseError: If the content isn't a valid FeedMessage
    """
    return positions_from_feed_message(decode_feed_message(content))


def positions_from_feed_message(feed: gtfs_realtime_pb2.FeedMessage) -> list[VehiclePosition]:
    message_timestamp = feed.header.timestamp

    positions = []
    for entity in feed.entity:
        if not entity.HasField("vehicle"):
            logger.warning("Skipping entity %s: no vehicle position", entity.id)
            continue

        vehicle = entity.vehicle
        trip = vehicle.trip
        descriptor = vehicle.vehicle
        position = vehicle.position

        start_time = _field(trip, "start_time")
        try:
            trip_start_time = parse_gtfs_time(start_time)
        except FeedParseError:
            logger.warning("Entity %s has invalid trip start time %r", entity.id, start_time)
            trip_start_time = None

        timestamp = _field(vehicle, "timestamp") or message_timestamp

        positions.append(
            VehiclePosition(
                entity_id=entity.id,
                message_timestamp=message_timestamp,
                # Trip information
                trip_id=_field(trip, "trip_id"),
                route_id=_field(trip, "route_id"),
                direction_id=_field(trip, "direction_id"),
                trip_start_time=trip_start_time,
                trip_start_date=_field(trip, "start_date"),
                schedule_relationship=_field(trip, "schedule_relationship"),
                # Vehicle identification
                vehicle_id=_field(descriptor, "id"),
                vehicle_label=_field(descriptor, "label"),
                license_plate=_field(descriptor, "license_plate"),
                # Position data
                latitude=_field(position, "latitude"),
                longitude=_field(position, "longitude"),
                bearing=_field(position, "bearing"),
                odometer=_field(position, "odometer"),
                speed=_field(position, "speed"),
                # Stop information
                current_stop_sequence=_field(vehicle, "current_stop_sequence"),
                stop_id=_field(vehicle, "stop_id"),
                current_status=_field(vehicle, "current_status"),
                # Additional data
                congestion_level=_field(vehicle, "congestion_level"),
                occupancy_status=_field(vehicle, "occupancy_status"),
                occupancy_percentage=_field(vehicle, "occupancy_percentage"),
                position_timestamp=_epoch_to_naive_utc(timestamp),
            )
        )

    return positions


def fetch_vehicle_positions(
    url: str, headers: Optional[dict] = None, timeout: float = 10
) -> tuple[int, list[VehiclePosition]]:
    """
    Fetch and decode real-time vehicle positions

    Returns:
        Tuple of (message timestamp, positions)
    """
    try:
        response = requests.get(url, headers=headers, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise FeedParseError(f"Timeout: request took longer than {timeout} seconds") from e
    except requests.exceptions.RequestException as e:
        raise FeedParseError(f"Network error fetching {url}: {e}") from e

    if response.status_code != 200:
        raise FeedParseError(f"Error fetching vehicle positions: {response.status_code}")

    feed = decode_feed_message(response.content)
    return feed.header.timestamp, positions_from_feed_message(feed)


class LatestUpdateTracker:
    """
    Remembers the newest GTFS-RT message timestamp processed.

    Feeds are usually polled faster than they are refreshed; a message whose
    header timestamp isn't strictly newer than the last one has been stored already.
    """

    def __init__(self, latest_message_timestamp: int = 0):
        self.latest_message_timestamp = latest_message_timestamp

    def should_process_message(self, message_timestamp: int) -> bool:
        if message_timestamp > self.latest_message_timestamp:
            self.latest_message_timestamp = message_timestamp
            return True
        return False
