"""
Command line interface

Usage:
  # Store a static feed (from a URL or a local zip/directory)
  gtfs-analyze store --db-url sqlite:///gtfs.db --static-url https://example.com/gtfs.zip
  gtfs-analyze store --db-url sqlite:///gtfs.db --static-path ./google_transit.zip

  # Poll a GTFS-RT vehicle positions feed and store every new message
  gtfs-analyze collect --db-url sqlite:///gtfs.db --vehicle-positions-url https://example.com/vp.pb

  # Calculate on-time performance by trip
  gtfs-analyze calculate otp --db-url sqlite:///gtfs.db \\
      --start-time 2023-06-08T00:00:00-06:00 --end-time 2023-06-09T00:00:00-06:00 --threshold 5m
"""

import argparse
import logging
import re
import sys
import time
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from gtfs_analyze.config import LOG_LEVELS, Settings, configure_logging, load_settings
from gtfs_analyze.database import get_engine, get_session, init_db
from gtfs_analyze.exceptions import FeedParseError, GtfsAnalyzeError
from gtfs_analyze.otp import calculate_otp_for_time_range
from gtfs_analyze.realtime_reader import LatestUpdateTracker, fetch_vehicle_positions
from gtfs_analyze.storage import get_latest_message_timestamp, store, write_vehicle_positions

logger = logging.getLogger(__name__)

RFC822Z_FORMAT = "%d %b %y %H:%M %z"

DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ms|h|m|s)")
DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_time(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp or an RFC 822 timestamp with numeric zone
    (e.g. "2023-06-08T08:00:00-06:00" or "08 Jun 23 08:00 -0600").

    The result is always timezone-aware.
    """
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = datetime.strptime(value, RFC822Z_FORMAT)
        except ValueError:
            raise argparse.ArgumentTypeError(
                f"invalid time {value!r}: expected RFC 3339 or '02 Jan 06 15:04 -0700'"
            ) from None

    if parsed.tzinfo is None:
        raise argparse.ArgumentTypeError(f"time {value!r} must include a UTC offset")
    return parsed


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "7m", "90s" or "1h30m" """
    text = value.strip()
    sign = 1
    if text[:1] in ("-", "+"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]

    if text == "0":
        return timedelta(0)

    seconds = 0.0
    position = 0
    for match in DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        position = match.end()

    if not text or position != len(text):
        raise argparse.ArgumentTypeError(f"invalid duration {value!r}: expected e.g. 7m, 90s, 1h30m")
    return timedelta(seconds=sign * seconds)


def parse_timezone(value: str) -> ZoneInfo:
    try:
        return ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise argparse.ArgumentTypeError(f"unknown timezone {value!r}") from None


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


# Commands


def run_store(args, settings: Settings) -> int:
    static_url = args.static_url
    static_path = args.static_path
    if static_url is None and static_path is None:
        static_url = settings.static_gtfs_url or None
    if static_url is None and static_path is None:
        raise GtfsAnalyzeError("Provide --static-url or --static-path (or set STATIC_GTFS_URL)")

    engine = init_db(get_engine(args.db_url))
    db = get_session(engine)
    try:
        feed = store(
            db,
            static_url=static_url,
            static_path=static_path,
            headers=settings.request_headers(),
            timeout=settings.request_timeout_seconds,
        )
    finally:
        db.close()

    print(f"Feed version {feed.version}")
    print(f"  Agencies:   {len(feed.agencies):,}")
    print(f"  Routes:     {len(feed.routes):,}")
    print(f"  Trips:      {len(feed.trips):,}")
    print(f"  Stop times: {len(feed.stop_times):,}")
    return 0


def collect_once(db, url: str, tracker: LatestUpdateTracker, headers=None, timeout: float = 10) -> int:
    """
    Fetch one GTFS-RT message and store its positions if it's newer than the last one

    Returns:
        Number of positions written
    """
    message_timestamp, positions = fetch_vehicle_positions(url, headers=headers, timeout=timeout)
    if not tracker.should_process_message(message_timestamp):
        logger.debug("Message %d already processed, skipping", message_timestamp)
        return 0
    return write_vehicle_positions(db, positions)


def run_collect(args, settings: Settings) -> int:
    url = args.vehicle_positions_url or settings.vehicle_positions_url
    if not url:
        raise GtfsAnalyzeError("Provide --vehicle-positions-url (or set VEHICLE_POSITIONS_URL)")

    engine = init_db(get_engine(args.db_url))
    db = get_session(engine)
    tracker = LatestUpdateTracker(get_latest_message_timestamp(db))

    if not args.once:
        print(f"Collecting vehicle positions every {args.interval:g} seconds")
        print("Press Ctrl+C to stop")

    try:
        while True:
            try:
                written = collect_once(
                    db,
                    url,
                    tracker,
                    headers=settings.request_headers(),
                    timeout=settings.request_timeout_seconds,
                )
                print(f"[{_timestamp()}] Saved {written} vehicle positions")
            except FeedParseError as e:
                # A failed poll shouldn't stop the collector
                logger.error("Error collecting vehicle positions: %s", e)
                if args.once:
                    raise

            if args.once:
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        print("\nStopping continuous collection...")
    finally:
        db.close()
    return 0


def run_calculate_otp(args, settings: Settings) -> int:
    if args.end_time <= args.start_time:
        raise GtfsAnalyzeError("--end-time must be after --start-time")

    engine = init_db(get_engine(args.db_url))
    db = get_session(engine)
    try:
        summary = calculate_otp_for_time_range(
            db,
            args.start_time,
            args.end_time,
            args.threshold,
            report_timezone=args.report_timezone,
        )
    finally:
        db.close()

    print(summary.pretty_print())
    return 0


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gtfs-analyze",
        description="Store GTFS feeds and calculate on-time performance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        choices=list(LOG_LEVELS),
        default=settings.log_level,
        help=f"Logging verbosity (default: {settings.log_level})",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    store_parser = commands.add_parser("store", help="Store a static GTFS feed")
    store_parser.add_argument(
        "--db-url", default=settings.database_url, help="SQLAlchemy database URL"
    )
    source = store_parser.add_mutually_exclusive_group()
    source.add_argument("--static-url", help="URL of a zipped static GTFS feed")
    source.add_argument("--static-path", help="Local GTFS zip file or directory of .txt files")
    store_parser.set_defaults(handler=run_store)

    collect_parser = commands.add_parser("collect", help="Collect GTFS-RT vehicle positions")
    collect_parser.add_argument(
        "--db-url", default=settings.database_url, help="SQLAlchemy database URL"
    )
    collect_parser.add_argument(
        "--vehicle-positions-url",
        default=settings.vehicle_positions_url or None,
        help="URL of the GTFS-RT vehicle positions feed",
    )
    collect_parser.add_argument(
        "--interval",
        type=float,
        default=settings.poll_interval_seconds,
        help=f"Seconds between polls (default: {settings.poll_interval_seconds:g})",
    )
    collect_parser.add_argument("--once", action="store_true", help="Poll a single time and exit")
    collect_parser.set_defaults(handler=run_collect)

    calculate_parser = commands.add_parser("calculate", help="Calculate performance metrics")
    metrics = calculate_parser.add_subparsers(dest="metric", required=True)

    otp_parser = metrics.add_parser("otp", help="On-time performance by trip")
    otp_parser.add_argument(
        "--db-url", default=settings.database_url, help="SQLAlchemy database URL"
    )
    otp_parser.add_argument(
        "--start-time", type=parse_time, required=True, help="Start of the analysis window"
    )
    otp_parser.add_argument(
        "--end-time", type=parse_time, required=True, help="End of the analysis window"
    )
    otp_parser.add_argument(
        "--threshold",
        type=parse_duration,
        default=timedelta(minutes=settings.on_time_threshold_minutes),
        help=f"On-time threshold, e.g. 5m or 90s (default: {settings.on_time_threshold_minutes:g}m)",
    )
    otp_parser.add_argument(
        "--report-timezone",
        type=parse_timezone,
        default=None,
        help="Timezone used to assign position reports to service dates",
    )
    otp_parser.set_defaults(handler=run_calculate_otp)

    return parser


def main(argv: Optional[list] = None) -> int:
    settings = load_settings()
    parser = build_parser(settings)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        return args.handler(args, settings)
    except GtfsAnalyzeError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
