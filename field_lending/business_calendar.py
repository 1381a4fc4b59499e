"""
Business Calendar Module

Decides which calendar days are business days (weekdays that are not a
registered holiday) and holds the holiday store. All dates are UTC calendar
dates; every other module routes its date math through here.
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import ValidationError, NotFoundError, StateConflictError
from .logging_config import get_logger, log_action


logger = get_logger("fieldbook.calendar")


def normalize_date(value: Any) -> Optional[date]:
    """
    Normalize a date-like value to a UTC calendar date.

    Accepts date, datetime (naive values are taken as UTC) and ISO-8601
    strings. Returns None for anything that cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()

    if isinstance(value, date):
        return value

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return normalize_date(datetime.fromisoformat(text))
        except ValueError:
            pass
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None

    return None


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def recurring_key_for(day: date) -> str:
    """MM-DD key used to match a recurring holiday in any year"""
    return f"{day.month:02d}-{day.day:02d}"


@dataclass
class Holiday(StorageRecord):
    """A non-business-day override, either one-off or recurring yearly"""
    holiday_date: date
    reason: str = ""
    is_recurring: bool = False
    recurring_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'holiday_date': self.holiday_date.isoformat(),
            'reason': self.reason,
            'is_recurring': self.is_recurring,
            'recurring_key': self.recurring_key
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Holiday':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            holiday_date=date.fromisoformat(data['holiday_date']),
            reason=data.get('reason') or "",
            is_recurring=bool(data.get('is_recurring', False)),
            recurring_key=data.get('recurring_key')
        )

    def matches(self, day: date) -> bool:
        if self.is_recurring:
            return self.recurring_key == recurring_key_for(day)
        return self.holiday_date == day


class HolidayStore:
    """
    Persistent holiday registry.

    Keeps an in-process index keyed by exact date and by MM-DD recurrence
    key, rebuilt whenever the registry changes.
    """

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit_trail
        self.table_name = "holidays"
        # Guards the cached index only; never held while storage is read
        self._lock = threading.Lock()
        self._exact: Optional[Dict[date, Holiday]] = None
        self._recurring: Dict[str, Holiday] = {}
        self._generation = 0

    def _index(self) -> Tuple[Dict[date, Holiday], Dict[str, Holiday]]:
        with self._lock:
            if self._exact is not None:
                return self._exact, self._recurring
            generation = self._generation

        exact: Dict[date, Holiday] = {}
        recurring: Dict[str, Holiday] = {}
        for holiday in self.list_holidays():
            if holiday.is_recurring and holiday.recurring_key:
                recurring.setdefault(holiday.recurring_key, holiday)
            else:
                exact.setdefault(holiday.holiday_date, holiday)

        with self._lock:
            # A change while reading leaves the index to the next lookup
            if self._generation == generation:
                self._exact = exact
                self._recurring = recurring
        return exact, recurring

    def invalidate(self) -> None:
        """Drop the cached index so the next lookup re-reads storage"""
        with self._lock:
            self._generation += 1
            self._exact = None
            self._recurring = {}

    def add_holiday(self, holiday_date: Any, reason: str = "",
                    is_recurring: bool = False, user_id: Optional[str] = None) -> Holiday:
        """
        Register a holiday.

        Raises:
            ValidationError: If the date cannot be parsed
            StateConflictError: If a recurring holiday already uses the same
                MM-DD, or a one-off holiday already exists on that date
        """
        day = normalize_date(holiday_date)
        if day is None:
            raise ValidationError("A valid holiday date is required")

        reason = reason.strip() if isinstance(reason, str) else ""
        is_recurring = bool(is_recurring)
        key = recurring_key_for(day) if is_recurring else None

        with self.storage.atomic():
            for existing in self.list_holidays():
                if is_recurring and existing.is_recurring and existing.recurring_key == key:
                    raise StateConflictError(
                        "A recurring holiday already exists for this date",
                        {"recurring_key": key}
                    )
                if not is_recurring and not existing.is_recurring and existing.holiday_date == day:
                    raise StateConflictError(
                        "A holiday already exists on this date",
                        {"date": day.isoformat()}
                    )

            now = datetime.now(timezone.utc)
            holiday = Holiday(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                holiday_date=day,
                reason=reason,
                is_recurring=is_recurring,
                recurring_key=key
            )
            self.storage.save(self.table_name, holiday.id, holiday.to_dict())
            self.invalidate()

        if self.audit:
            self.audit.log_event(
                AuditEventType.HOLIDAY_ADDED,
                entity_type="holiday",
                entity_id=holiday.id,
                metadata={"date": day.isoformat(), "reason": reason, "is_recurring": is_recurring},
                user_id=user_id
            )
        log_action(logger, "info", f"Holiday added on {day.isoformat()}",
                   user_id=user_id, action="add_holiday", resource=f"holiday:{holiday.id}",
                   extra={"is_recurring": is_recurring, "reason": reason})
        return holiday

    def remove_holiday(self, holiday_id: str, user_id: Optional[str] = None) -> None:
        with self.storage.atomic():
            if not self.storage.delete(self.table_name, holiday_id):
                raise NotFoundError(f"Holiday {holiday_id} not found")
            self.invalidate()

        if self.audit:
            self.audit.log_event(
                AuditEventType.HOLIDAY_REMOVED,
                entity_type="holiday",
                entity_id=holiday_id,
                user_id=user_id
            )
        log_action(logger, "info", "Holiday removed", user_id=user_id,
                   action="remove_holiday", resource=f"holiday:{holiday_id}")

    def list_holidays(self) -> List[Holiday]:
        holidays = [Holiday.from_dict(data) for data in self.storage.load_all(self.table_name)]
        holidays.sort(key=lambda h: h.holiday_date)
        return holidays

    def holiday_for(self, day: date) -> Optional[Holiday]:
        exact, recurring = self._index()
        holiday = exact.get(day)
        if holiday is not None:
            return holiday
        return recurring.get(recurring_key_for(day))


class BusinessCalendar:
    """Business-day arithmetic over weekends and the holiday store"""

    def __init__(self, holiday_store: Optional[HolidayStore] = None):
        self.holidays = holiday_store

    @staticmethod
    def is_weekend(day: date) -> bool:
        return day.weekday() >= 5

    def holiday_for(self, day: Any) -> Optional[Holiday]:
        normalized = normalize_date(day)
        if normalized is None or self.holidays is None:
            return None
        return self.holidays.holiday_for(normalized)

    def is_holiday(self, day: Any) -> bool:
        return self.holiday_for(day) is not None

    def is_business_day(self, day: Any) -> bool:
        normalized = normalize_date(day)
        if normalized is None:
            raise ValidationError(f"Invalid date: {day!r}")
        if self.is_weekend(normalized):
            return False
        return not self.is_holiday(normalized)

    def next_business_day(self, day: Any) -> date:
        """Smallest business day strictly after the given date"""
        cursor = normalize_date(day)
        if cursor is None:
            raise ValidationError(f"Invalid date: {day!r}")
        cursor += timedelta(days=1)
        while not self.is_business_day(cursor):
            cursor += timedelta(days=1)
        return cursor

    def business_day_on_or_after(self, day: Any) -> date:
        cursor = normalize_date(day)
        if cursor is None:
            raise ValidationError(f"Invalid date: {day!r}")
        if self.is_business_day(cursor):
            return cursor
        return self.next_business_day(cursor)

    @staticmethod
    def previous_business_weekday(day: date) -> date:
        """Roll a weekend back to the preceding Friday; weekdays are unchanged"""
        if day.weekday() == 5:
            return day - timedelta(days=1)
        if day.weekday() == 6:
            return day - timedelta(days=2)
        return day

    def count_business_days(self, start: Any, end: Any) -> int:
        """Business days in the inclusive range [start, end]; 0 if end < start"""
        start_day = normalize_date(start)
        end_day = normalize_date(end)
        if start_day is None or end_day is None:
            raise ValidationError("Invalid date range")
        if end_day < start_day:
            return 0

        count = 0
        cursor = start_day
        while cursor <= end_day:
            if self.is_business_day(cursor):
                count += 1
            cursor += timedelta(days=1)
        return count

    def holidays_between(self, start: Any, end: Any) -> Dict[date, str]:
        """Map of holiday dates to reasons within [start, end]"""
        start_day = normalize_date(start)
        end_day = normalize_date(end)
        if start_day is None or end_day is None or end_day < start_day:
            return {}

        result: Dict[date, str] = {}
        cursor = start_day
        while cursor <= end_day:
            holiday = self.holiday_for(cursor)
            if holiday is not None:
                result[cursor] = holiday.reason
            cursor += timedelta(days=1)
        return result
