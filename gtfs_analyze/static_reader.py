"""
Static GTFS reader

Reads a GTFS static feed from a URL, a local zip archive or an unzipped
directory of .txt files, and turns the files the OTP calculation needs into
model instances:

- agency.txt, stops.txt, routes.txt, trips.txt, stop_times.txt, calendar.txt
- feed_info.txt (optional, at most one row)

Every record is tagged with the feed version. That's feed_info.feed_version when
the feed provides one, otherwise the MD5 hash of the parsed files, so that
re-downloading an unchanged feed yields the same version.
"""

import csv
import hashlib
import io
import logging
import re
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import requests

from gtfs_analyze.exceptions import FeedParseError
from gtfs_analyze.models import (
    Agency,
    Calendar,
    FeedInfo,
    Route,
    StaticFeed,
    Stop,
    StopTime,
    Trip,
)

logger = logging.getLogger(__name__)

GTFS_TIME_PATTERN = re.compile(r"^(\d{1,3}):([0-5]\d):([0-5]\d)$")


@dataclass
class GtfsFile:
    name: str
    content: bytes


def parse_gtfs_time(value: Optional[str]) -> Optional[int]:
    """
    Parse a GTFS time (HH:MM:SS) into seconds after midnight.

    GTFS allows times >= 24:00:00 for trips that run past midnight, so the
    result can exceed 86400. Empty values return None.

    Raises:
        FeedParseError: If the value isn't a valid GTFS time
    """
    if value is None or not value.strip():
        return None
    match = GTFS_TIME_PATTERN.match(value.strip())
    if not match:
        raise FeedParseError(f"Invalid GTFS time {value!r}")
    hours, minutes, seconds = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    return value


def _parse_int(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as e:
        raise FeedParseError(f"Invalid integer {value!r}") from e


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError as e:
        raise FeedParseError(f"Invalid number {value!r}") from e


def _require(row: dict, column: str) -> str:
    value = row.get(column)
    if value is None or value == "":
        raise FeedParseError(f"missing required column {column}")
    return value


def _build_agency(row: dict) -> Agency:
    return Agency(
        agency_id=_optional(row.get("agency_id")),
        agency_name=_optional(row.get("agency_name")),
        agency_url=_optional(row.get("agency_url")),
        agency_timezone=_optional(row.get("agency_timezone")),
        agency_lang=_optional(row.get("agency_lang")),
        agency_phone=_optional(row.get("agency_phone")),
        agency_fare_url=_optional(row.get("agency_fare_url")),
        agency_email=_optional(row.get("agency_email")),
    )


def _build_stop(row: dict) -> Stop:
    return Stop(
        stop_id=_require(row, "stop_id"),
        stop_code=_optional(row.get("stop_code")),
        stop_name=_optional(row.get("stop_name")),
        stop_desc=_optional(row.get("stop_desc")),
        stop_lat=_parse_float(row.get("stop_lat")),
        stop_lon=_parse_float(row.get("stop_lon")),
        zone_id=_optional(row.get("zone_id")),
        stop_url=_optional(row.get("stop_url")),
        location_type=_parse_int(row.get("location_type"), default=0),
        parent_station=_optional(row.get("parent_station")),
        stop_timezone=_optional(row.get("stop_timezone")),
        wheelchair_boarding=_parse_int(row.get("wheelchair_boarding")),
    )


def _build_route(row: dict) -> Route:
    return Route(
        route_id=_require(row, "route_id"),
        agency_id=_optional(row.get("agency_id")),
        route_short_name=_optional(row.get("route_short_name")),
        route_long_name=_optional(row.get("route_long_name")),
        route_desc=_optional(row.get("route_desc")),
        route_type=_parse_int(row.get("route_type")),
        route_url=_optional(row.get("route_url")),
        route_color=_optional(row.get("route_color")),
        route_text_color=_optional(row.get("route_text_color")),
        route_sort_order=_parse_int(row.get("route_sort_order")),
    )


def _build_trip(row: dict) -> Trip:
    return Trip(
        trip_id=_require(row, "trip_id"),
        route_id=_optional(row.get("route_id")),
        service_id=_optional(row.get("service_id")),
        trip_headsign=_optional(row.get("trip_headsign")),
        trip_short_name=_optional(row.get("trip_short_name")),
        direction_id=_parse_int(row.get("direction_id")),
        block_id=_optional(row.get("block_id")),
        shape_id=_optional(row.get("shape_id")),
        wheelchair_accessible=_parse_int(row.get("wheelchair_accessible")),
        bikes_allowed=_parse_int(row.get("bikes_allowed")),
    )


def _build_stop_time(row: dict) -> StopTime:
    return StopTime(
        trip_id=_require(row, "trip_id"),
        stop_id=_require(row, "stop_id"),
        arrival_time=parse_gtfs_time(row.get("arrival_time")),
        departure_time=parse_gtfs_time(row.get("departure_time")),
        stop_sequence=_parse_int(_require(row, "stop_sequence")),
        stop_headsign=_optional(row.get("stop_headsign")),
        pickup_type=_parse_int(row.get("pickup_type"), default=0),
        drop_off_type=_parse_int(row.get("drop_off_type"), default=0),
        shape_dist_traveled=_parse_float(row.get("shape_dist_traveled")),
        timepoint=_parse_int(row.get("timepoint")),
    )


def _build_calendar(row: dict) -> Calendar:
    return Calendar(
        service_id=_require(row, "service_id"),
        monday=_parse_int(row.get("monday"), default=0),
        tuesday=_parse_int(row.get("tuesday"), default=0),
        wednesday=_parse_int(row.get("wednesday"), default=0),
        thursday=_parse_int(row.get("thursday"), default=0),
        friday=_parse_int(row.get("friday"), default=0),
        saturday=_parse_int(row.get("saturday"), default=0),
        sunday=_parse_int(row.get("sunday"), default=0),
        start_date=_optional(row.get("start_date")),
        end_date=_optional(row.get("end_date")),
    )


def _build_feed_info(row: dict) -> FeedInfo:
    return FeedInfo(
        version=_optional(row.get("feed_version")),
        feed_publisher_name=_optional(row.get("feed_publisher_name")),
        feed_publisher_url=_optional(row.get("feed_publisher_url")),
        feed_lang=_optional(row.get("feed_lang")),
        default_lang=_optional(row.get("default_lang")),
        feed_start_date=_optional(row.get("feed_start_date")),
        feed_end_date=_optional(row.get("feed_end_date")),
        feed_contact_email=_optional(row.get("feed_contact_email")),
        feed_contact_url=_optional(row.get("feed_contact_url")),
    )


# filename -> (StaticFeed attribute, row builder)
RECORD_BUILDERS = {
    "agency.txt": ("agencies", _build_agency),
    "stops.txt": ("stops", _build_stop),
    "routes.txt": ("routes", _build_route),
    "trips.txt": ("trips", _build_trip),
    "stop_times.txt": ("stop_times", _build_stop_time),
    "calendar.txt": ("calendars", _build_calendar),
}


def parse_csv(content: bytes) -> list[dict]:
    """Parse a GTFS text file (UTF-8, optional BOM) into a list of rows"""
    reader = csv.DictReader(io.StringIO(content.decode("utf-8-sig")))
    rows = []
    for row in reader:
        # GTFS producers routinely pad values with spaces
        rows.append({key.strip(): (value or "").strip() for key, value in row.items() if key})
    return rows


def parse_static_gtfs_from_files(files: list[GtfsFile]) -> StaticFeed:
    """
    Build a StaticFeed from the raw GTFS files

    Unknown files are ignored. The hash used as a fallback version covers
    the recognised files only, in name order.
    """
    records = {attribute: [] for attribute, _ in RECORD_BUILDERS.values()}
    feed_info = None
    md5 = hashlib.md5()

    for gtfs_file in sorted(files, key=lambda f: f.name.lower()):
        filename = gtfs_file.name.lower()

        if filename == "feed_info.txt":
            rows = parse_csv(gtfs_file.content)
            if len(rows) > 1:
                raise FeedParseError(
                    f"Multiple feed info rows detected. Expected 1 or 0, got {len(rows)}"
                )
            if rows:
                feed_info = _build_feed_info(rows[0])
            md5.update(gtfs_file.content)
            continue

        if filename not in RECORD_BUILDERS:
            logger.debug("Skipping unused GTFS file %s", gtfs_file.name)
            continue

        attribute, build = RECORD_BUILDERS[filename]
        rows = parse_csv(gtfs_file.content)
        try:
            records[attribute] = [build(row) for row in rows]
        except FeedParseError as e:
            raise FeedParseError(f"{gtfs_file.name}: {e}") from e
        md5.update(gtfs_file.content)
        logger.debug("Parsed %d records from %s", len(rows), gtfs_file.name)

    if feed_info is None:
        feed_info = FeedInfo()
    if not feed_info.version:
        feed_info.version = md5.hexdigest()
    feed_info.download_time = datetime.utcnow()

    feed = StaticFeed(feed_info=feed_info, **records)
    for record in feed.all_records():
        record.version = feed_info.version
    return feed


def get_gtfs_files_from_zip(content: bytes) -> list[GtfsFile]:
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise FeedParseError(
            "Unable to read zip file. Must provide an unzipped directory with GTFS txt "
            "files, or a zipped google_transit.zip file"
        ) from e

    with archive:
        return [
            # Some agencies nest the files in a folder inside the archive
            GtfsFile(name=Path(info.filename).name, content=archive.read(info))
            for info in archive.infolist()
            if not info.is_dir()
        ]


def parse_static_gtfs_from_path(path) -> StaticFeed:
    """Parse a static GTFS feed from a local directory or zip file"""
    path = Path(path)
    if not path.exists():
        raise FeedParseError(f"No such file or directory: {path}")

    if path.is_dir():
        files = [
            GtfsFile(name=child.name, content=child.read_bytes())
            for child in sorted(path.iterdir())
            if child.is_file()
        ]
    else:
        files = get_gtfs_files_from_zip(path.read_bytes())

    return parse_static_gtfs_from_files(files)


def parse_static_gtfs_from_url(
    url: str, headers: Optional[dict] = None, timeout: float = 30
) -> StaticFeed:
    """Download a zipped static GTFS feed and parse it"""
    try:
        response = requests.get(url, headers=headers, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise FeedParseError(f"Timeout: download took longer than {timeout} seconds") from e
    except requests.exceptions.RequestException as e:
        raise FeedParseError(f"Network error downloading {url}: {e}") from e

    if response.status_code != 200:
        raise FeedParseError(f"Non-successful response {response.status_code} from {url}")

    logger.info("Downloaded static GTFS (%.1f MB) from %s", len(response.content) / 1024 / 1024, url)
    return parse_static_gtfs_from_files(get_gtfs_files_from_zip(response.content))
