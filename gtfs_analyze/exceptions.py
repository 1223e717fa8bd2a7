class GtfsAnalyzeError(Exception):
    """Base class for errors raised by gtfs_analyze"""


class InvalidFeed(GtfsAnalyzeError):
    """The static feed cannot back an OTP calculation (no agency, unknown timezone)"""


class FeedParseError(GtfsAnalyzeError):
    """A GTFS static archive, one of its files, or a GTFS-RT message could not be read"""


class FeedNotFound(GtfsAnalyzeError):
    """No static feed version is stored in the database"""


class TripNotFound(GtfsAnalyzeError):
    """A position report names a trip that doesn't run on the report's date"""

    def __init__(self, trip_id, date):
        super().__init__(f"No trip found for position data with trip id {trip_id} on date {date}")
        self.trip_id = trip_id
        self.date = date


class StopNotFound(GtfsAnalyzeError):
    """A position report names a stop that isn't part of the trip"""

    def __init__(self, trip_id, stop_id):
        super().__init__(f"Could not find stop with id {stop_id} on trip {trip_id}")
        self.trip_id = trip_id
        self.stop_id = stop_id


class InvalidReport(GtfsAnalyzeError):
    """A position report can't be placed on the schedule (e.g. a naive timestamp)"""
