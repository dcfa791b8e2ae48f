from datetime import date, datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def calendar_day(moment: datetime) -> date:
    """UTC calendar day of an instant. Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(timezone.utc).date()
