from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC, matching how timestamps are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_github_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as returned by the GitHub API ("2024-01-01T10:00:00Z")"""
    return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def to_github_timestamp(value: datetime) -> str:
    return as_naive_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")
