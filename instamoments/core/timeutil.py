from datetime import datetime, timezone


def utcnow() -> datetime:
    # Naive UTC to match the DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_seconds(dt: datetime) -> int:
    """Unix time for a naive-UTC datetime."""
    return int(dt.replace(tzinfo=timezone.utc).timestamp())
