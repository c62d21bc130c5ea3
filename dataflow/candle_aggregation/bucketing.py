"""
Time Bucketing

Maps a trade timestamp onto the left edge of its candle bucket.
"""

from datetime import datetime, timedelta, timezone

TIMEFRAMES = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_SECOND = timedelta(seconds=1)


def timeframe_seconds(timeframe: str) -> int:
    """Duration of a timeframe in seconds"""
    try:
        return TIMEFRAMES[timeframe]
    except (KeyError, TypeError):
        raise ValueError(
            f"Invalid timeframe '{timeframe}'. Must be one of: {list(TIMEFRAMES.keys())}"
        ) from None


def to_utc(timestamp: datetime) -> datetime:
    """Naive datetimes are taken to be UTC"""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def bucket_start_epoch(seconds: int, timeframe: str) -> int:
    """Bucket start for an epoch-seconds value"""
    if seconds < 0:
        raise ValueError(f"Timestamp must be non-negative, got {seconds}")
    duration = timeframe_seconds(timeframe)
    return (int(seconds) // duration) * duration


def bucket_start(timestamp: datetime, timeframe: str) -> datetime:
    """
    Get the start time for a candle containing this timestamp.

    A timestamp exactly on a boundary belongs to the bucket it starts.
    Computed on integer seconds since the epoch, so sub-second precision
    never rounds a timestamp into the next bucket.
    """
    epoch = (to_utc(timestamp) - EPOCH) // _ONE_SECOND
    aligned = bucket_start_epoch(epoch, timeframe)
    return EPOCH + timedelta(seconds=aligned)


def bucket_end(start: datetime, timeframe: str) -> datetime:
    """Exclusive right edge of the bucket starting at ``start``"""
    return to_utc(start) + timedelta(seconds=timeframe_seconds(timeframe))
