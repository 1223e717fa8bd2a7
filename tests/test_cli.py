"""
CLI tests for gtfs-analyze

Tests argument parsing helpers and runs the store, collect and calculate
commands end to end against a SQLite file database.

Run with: pytest tests/test_cli.py
"""

import argparse
from datetime import datetime, timedelta, timezone

import pytest

from gtfs_analyze.cli import build_parser, main, parse_duration, parse_time, parse_timezone
from gtfs_analyze.config import load_settings
from gtfs_analyze.database import get_engine, get_session
from gtfs_analyze.models import VehiclePosition
from tests.conftest import DENVER, make_vehicle_position
from tests.test_static_reader import GTFS_FILES


@pytest.fixture
def gtfs_dir(tmp_path):
    directory = tmp_path / "gtfs"
    directory.mkdir()
    for name, text in GTFS_FILES.items():
        (directory / name).write_text(text, encoding="utf-8")
    return directory


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'gtfs.db'}"


class TestParseTime:
    """Tests for parse_time"""

    def test_rfc3339(self):
        assert parse_time("2023-06-08T08:00:00-06:00") == datetime(2023, 6, 8, 14, 0, tzinfo=timezone.utc)

    def test_rfc3339_utc_suffix(self):
        assert parse_time("2023-06-08T14:00:00Z") == datetime(2023, 6, 8, 14, 0, tzinfo=timezone.utc)

    def test_rfc822_numeric_zone(self):
        assert parse_time("08 Jun 23 08:00 -0600") == datetime(2023, 6, 8, 14, 0, tzinfo=timezone.utc)

    def test_naive_time_rejected(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_time("2023-06-08T08:00:00")

    def test_garbage_rejected(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_time("yesterday")


class TestParseDuration:
    """Tests for parse_duration"""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("7m", timedelta(minutes=7)),
            ("90s", timedelta(seconds=90)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("1.5h", timedelta(minutes=90)),
            ("500ms", timedelta(milliseconds=500)),
            ("-5m", timedelta(minutes=-5)),
            ("0", timedelta(0)),
        ],
    )
    def test_valid_durations(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "7", "m", "7 minutes", "7d", "1h30"])
    def test_invalid_durations(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_duration(value)


def test_parse_timezone():
    assert parse_timezone("America/Denver") == DENVER
    with pytest.raises(argparse.ArgumentTypeError):
        parse_timezone("Mars/Olympus_Mons")


class TestBuildParser:
    """Tests for command line defaults"""

    def test_calculate_defaults(self):
        parser = build_parser(load_settings())
        args = parser.parse_args(
            [
                "calculate",
                "otp",
                "--start-time",
                "2023-06-08T00:00:00-06:00",
                "--end-time",
                "2023-06-09T00:00:00-06:00",
            ]
        )

        assert args.threshold == timedelta(minutes=7)
        assert args.report_timezone is None
        assert args.db_url == "sqlite:///:memory:"
        assert args.log_level == "info"

    def test_threshold_from_environment(self, monkeypatch):
        monkeypatch.setenv("ON_TIME_THRESHOLD_MINUTES", "3")
        parser = build_parser(load_settings())
        args = parser.parse_args(
            ["calculate", "otp", "--start-time", "2023-06-08T00:00:00Z", "--end-time", "2023-06-09T00:00:00Z"]
        )

        assert args.threshold == timedelta(minutes=3)

    def test_static_sources_are_exclusive(self):
        parser = build_parser(load_settings())
        with pytest.raises(SystemExit):
            parser.parse_args(["store", "--static-url", "https://example.com/gtfs.zip", "--static-path", "x"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser(load_settings()).parse_args([])


class TestCommands:
    """End-to-end runs of the store, collect and calculate commands"""

    def test_store_and_calculate(self, gtfs_dir, db_url, capsys):
        assert main(["--log-level", "warning", "store", "--db-url", db_url, "--static-path", str(gtfs_dir)]) == 0
        assert "Trips:      1" in capsys.readouterr().out

        calculate = [
            "--log-level",
            "warning",
            "calculate",
            "otp",
            "--db-url",
            db_url,
            "--start-time",
            "2023-06-08T00:00:00-06:00",
            "--end-time",
            "2023-06-08T23:00:00-06:00",
            "--threshold",
            "5m",
        ]

        assert main(calculate) == 0
        assert "No TripId with real-time data in range" in capsys.readouterr().out

        db = get_session(get_engine(db_url))
        try:
            db.add_all(
                [
                    make_vehicle_position(datetime(2023, 6, 8, 8, 32, tzinfo=DENVER), "stop1", 1),
                    make_vehicle_position(datetime(2023, 6, 8, 8, 56, tzinfo=DENVER), "stop2", 1),
                ]
            )
            db.commit()
        finally:
            db.close()

        assert main(calculate) == 0
        output = capsys.readouterr().out
        assert "trip1" in output
        assert "50.00" in output

    def test_store_twice_is_idempotent(self, gtfs_dir, db_url):
        store = ["--log-level", "warning", "store", "--db-url", db_url, "--static-path", str(gtfs_dir)]
        assert main(store) == 0
        assert main(store) == 0

    def test_store_without_source_fails(self, db_url):
        assert main(["--log-level", "warning", "store", "--db-url", db_url]) == 1

    def test_store_missing_path_fails(self, db_url, tmp_path):
        assert main(["--log-level", "warning", "store", "--db-url", db_url, "--static-path", str(tmp_path / "nope")]) == 1

    def test_calculate_without_feed_fails(self, db_url):
        args = [
            "--log-level",
            "warning",
            "calculate",
            "otp",
            "--db-url",
            db_url,
            "--start-time",
            "2023-06-08T00:00:00Z",
            "--end-time",
            "2023-06-09T00:00:00Z",
        ]
        assert main(args) == 1

    def test_calculate_rejects_inverted_range(self, db_url):
        args = [
            "--log-level",
            "warning",
            "calculate",
            "otp",
            "--db-url",
            db_url,
            "--start-time",
            "2023-06-09T00:00:00Z",
            "--end-time",
            "2023-06-08T00:00:00Z",
        ]
        assert main(args) == 1

    def test_collect_once(self, db_url, capsys, monkeypatch):
        when = datetime(2023, 6, 8, 8, 32, tzinfo=DENVER)
        position = make_vehicle_position(when, "stop1", 1)
        message_timestamp = position.message_timestamp
        fetched = {"result": (message_timestamp, [position])}
        calls = []

        def fake_fetch(url, headers=None, timeout=10):
            calls.append({"url": url, "headers": headers, "timeout": timeout})
            return fetched["result"]

        monkeypatch.setattr("gtfs_analyze.cli.fetch_vehicle_positions", fake_fetch)

        args = [
            "--log-level",
            "warning",
            "collect",
            "--db-url",
            db_url,
            "--vehicle-positions-url",
            "https://example.com/vp.pb",
            "--once",
        ]
        assert main(args) == 0
        assert "Saved 1 vehicle positions" in capsys.readouterr().out

        # Same message again: already stored, nothing written
        fetched["result"] = (message_timestamp, [make_vehicle_position(when, "stop1", 1)])
        assert main(args) == 0
        assert "Saved 0 vehicle positions" in capsys.readouterr().out

        assert calls[-1]["url"] == "https://example.com/vp.pb"
        assert calls[-1]["headers"] == {"api_key": "test_api_key_do_not_use"}

        db = get_session(get_engine(db_url))
        try:
            assert db.query(VehiclePosition).count() == 1
        finally:
            db.close()

    def test_collect_without_url_fails(self, db_url):
        assert main(["--log-level", "warning", "collect", "--db-url", db_url, "--once"]) == 1
