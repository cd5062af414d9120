import datetime


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the format stored in every DateTime column."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def hours_between(earlier: datetime.datetime, later: datetime.datetime) -> float:
    return (later - earlier).total_seconds() / 3600
