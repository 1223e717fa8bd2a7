"""
GTFS analysis toolkit

Stores static GTFS feeds and GTFS-RT vehicle positions, and calculates
on-time performance by reconciling the two:
- static_reader.py / realtime_reader.py: feed parsing
- storage.py: persistence of feeds and vehicle positions
- otp.py: on-time performance calculation
- cli.py: the gtfs-analyze command
"""
