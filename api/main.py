"""
FastAPI application for GTFS on-time performance

Serves on-time performance calculated on demand from the stored static feed
and the vehicle positions collected in the requested window.
"""

from datetime import datetime, timedelta

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from gtfs_analyze.database import get_db
from gtfs_analyze.exceptions import FeedNotFound, InvalidFeed
from gtfs_analyze.otp import calculate_otp_for_time_range

# Create FastAPI app
app = FastAPI(
    title="GTFS Analyze API",
    description="REST API for transit on-time performance",
    version="0.1.0",
)

# Enable CORS for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify your frontend domain
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """API root - health check"""
    return {"status": "ok", "name": "GTFS Analyze API", "version": "0.1.0", "docs": "/docs"}


@app.get("/api/otp")
def get_otp(
    start_time: datetime,
    end_time: datetime,
    threshold_minutes: float = Query(7, ge=0),
    db: Session = Depends(get_db),
):
    """
    Get on-time performance by trip for a time window

    Args:
        start_time: Start of the window (ISO 8601 with UTC offset)
        end_time: End of the window (ISO 8601 with UTC offset)
        threshold_minutes: Maximum deviation from schedule counted as on time (default: 7)

    Returns:
        {"group_by": "TripId", "entries": [{"name": ..., "on_time_performance": ...}]}
        with entries sorted by trip id and performance between 0 and 1
    """
    if start_time.tzinfo is None or end_time.tzinfo is None:
        raise HTTPException(status_code=400, detail="start_time and end_time must include a UTC offset")
    if end_time <= start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")

    try:
        summary = calculate_otp_for_time_range(
            db, start_time, end_time, timedelta(minutes=threshold_minutes)
        )
    except FeedNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except InvalidFeed as e:
        raise HTTPException(status_code=500, detail=str(e)) from e

    return summary.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
