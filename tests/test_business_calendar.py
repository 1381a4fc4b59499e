"""
Tests for the business-day calendar and holiday store
"""

import pytest
from datetime import date, datetime, timezone, timedelta

from field_lending.storage import InMemoryStorage
from field_lending.audit import AuditTrail, AuditEventType
from field_lending.business_calendar import (
    BusinessCalendar, HolidayStore, normalize_date, recurring_key_for
)
from field_lending.exceptions import ValidationError, NotFoundError, StateConflictError


class TestNormalizeDate:

    def test_date_passthrough(self):
        assert normalize_date(date(2024, 1, 2)) == date(2024, 1, 2)

    def test_naive_datetime_is_utc(self):
        assert normalize_date(datetime(2024, 1, 2, 23, 59)) == date(2024, 1, 2)

    def test_aware_datetime_converted_to_utc(self):
        late_evening_west = datetime(2024, 1, 2, 23, 30, tzinfo=timezone(timedelta(hours=-2)))
        assert normalize_date(late_evening_west) == date(2024, 1, 3)

    def test_iso_strings(self):
        assert normalize_date("2024-01-02") == date(2024, 1, 2)
        assert normalize_date("2024-01-02T10:00:00Z") == date(2024, 1, 2)
        assert normalize_date("2024-01-02T23:30:00-02:00") == date(2024, 1, 3)

    def test_unparseable_values(self):
        assert normalize_date("not a date") is None
        assert normalize_date("") is None
        assert normalize_date(None) is None
        assert normalize_date(12345) is None
        assert normalize_date(True) is None

    def test_recurring_key(self):
        assert recurring_key_for(date(2024, 12, 25)) == "12-25"


class TestHolidayStore:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.store = HolidayStore(self.storage, self.audit)

    def test_add_one_off_holiday(self):
        holiday = self.store.add_holiday("2024-01-15", reason="Public holiday")

        assert holiday.holiday_date == date(2024, 1, 15)
        assert not holiday.is_recurring
        assert self.store.holiday_for(date(2024, 1, 15)).reason == "Public holiday"
        assert self.store.holiday_for(date(2025, 1, 15)) is None
        assert len(self.audit.get_events_by_type(AuditEventType.HOLIDAY_ADDED)) == 1

    def test_recurring_holiday_matches_every_year(self):
        self.store.add_holiday(date(2023, 12, 25), reason="Christmas", is_recurring=True)

        assert self.store.holiday_for(date(2024, 12, 25)).reason == "Christmas"
        assert self.store.holiday_for(date(2031, 12, 25)) is not None

    def test_duplicate_recurring_key_rejected(self):
        self.store.add_holiday(date(2023, 12, 25), is_recurring=True)
        with pytest.raises(StateConflictError):
            self.store.add_holiday(date(2024, 12, 25), is_recurring=True)

    def test_duplicate_one_off_date_rejected(self):
        self.store.add_holiday(date(2024, 5, 1))
        with pytest.raises(StateConflictError):
            self.store.add_holiday("2024-05-01")

    def test_invalid_date_rejected(self):
        with pytest.raises(ValidationError):
            self.store.add_holiday("01/05/2024")

    def test_remove_holiday_invalidates_index(self):
        holiday = self.store.add_holiday(date(2024, 5, 1))
        assert self.store.holiday_for(date(2024, 5, 1)) is not None

        self.store.remove_holiday(holiday.id)
        assert self.store.holiday_for(date(2024, 5, 1)) is None

    def test_remove_unknown_holiday(self):
        with pytest.raises(NotFoundError):
            self.store.remove_holiday("missing")


class TestBusinessCalendar:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.store = HolidayStore(self.storage)
        self.calendar = BusinessCalendar(self.store)

    def test_weekends_are_not_business_days(self):
        assert not self.calendar.is_business_day(date(2024, 1, 6))   # Saturday
        assert not self.calendar.is_business_day(date(2024, 1, 7))   # Sunday
        assert self.calendar.is_business_day(date(2024, 1, 8))       # Monday

    def test_holiday_is_not_business_day(self):
        self.store.add_holiday(date(2024, 1, 8), reason="Staff retreat")
        assert not self.calendar.is_business_day("2024-01-08")
        assert self.calendar.is_holiday(date(2024, 1, 8))

    def test_invalid_date_raises(self):
        with pytest.raises(ValidationError):
            self.calendar.is_business_day("garbage")

    def test_next_business_day_is_strictly_after(self):
        assert self.calendar.next_business_day(date(2024, 1, 2)) == date(2024, 1, 3)
        assert self.calendar.next_business_day(date(2024, 1, 5)) == date(2024, 1, 8)

    def test_next_business_day_skips_holidays(self):
        self.store.add_holiday(date(2024, 1, 8))
        assert self.calendar.next_business_day(date(2024, 1, 5)) == date(2024, 1, 9)

    def test_business_day_on_or_after(self):
        assert self.calendar.business_day_on_or_after(date(2024, 1, 5)) == date(2024, 1, 5)
        assert self.calendar.business_day_on_or_after(date(2024, 1, 6)) == date(2024, 1, 8)

    def test_previous_business_weekday(self):
        assert BusinessCalendar.previous_business_weekday(date(2024, 1, 6)) == date(2024, 1, 5)
        assert BusinessCalendar.previous_business_weekday(date(2024, 1, 7)) == date(2024, 1, 5)
        assert BusinessCalendar.previous_business_weekday(date(2024, 1, 8)) == date(2024, 1, 8)

    def test_count_business_days(self):
        # January 2024: 23 weekdays
        assert self.calendar.count_business_days(date(2024, 1, 1), date(2024, 1, 31)) == 23
        self.store.add_holiday(date(2024, 1, 1), reason="New Year")
        assert self.calendar.count_business_days(date(2024, 1, 1), date(2024, 1, 31)) == 22
        assert self.calendar.count_business_days(date(2024, 1, 31), date(2024, 1, 1)) == 0

    def test_holidays_between(self):
        self.store.add_holiday(date(2024, 1, 1), reason="New Year")
        self.store.add_holiday(date(2023, 12, 25), reason="Christmas", is_recurring=True)

        result = self.calendar.holidays_between(date(2023, 12, 20), date(2024, 12, 31))
        assert result[date(2024, 1, 1)] == "New Year"
        assert result[date(2023, 12, 25)] == "Christmas"
        assert result[date(2024, 12, 25)] == "Christmas"

    def test_calendar_without_store(self):
        calendar = BusinessCalendar()
        assert calendar.is_business_day(date(2024, 1, 1))
        assert calendar.holiday_for(date(2024, 1, 1)) is None
