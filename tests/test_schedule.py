"""
Tests for repayment schedule generation
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from field_lending.storage import InMemoryStorage
from field_lending.business_calendar import BusinessCalendar, HolidayStore
from field_lending.schedule import (
    Installment, InstallmentStatus, LoanType, ScheduleGenerator,
    parse_loan_type, schedule_from_dicts, schedule_to_dicts
)
from field_lending.exceptions import ValidationError


class TestScheduleGeneration:

    def setup_method(self):
        self.store = HolidayStore(InMemoryStorage())
        self.calendar = BusinessCalendar(self.store)
        self.generator = ScheduleGenerator(self.calendar)

    def test_daily_schedule_january_2024(self):
        """22 weekday entries from Tue 2024-01-02 to Wed 2024-01-31"""
        schedule = self.generator.generate(date(2024, 1, 2), "daily", 22)

        assert len(schedule) == 22
        assert schedule[0].due_date == date(2024, 1, 2)
        assert schedule[-1].due_date == date(2024, 1, 31)
        assert schedule[0].status == InstallmentStatus.APPROVED
        assert all(entry.status == InstallmentStatus.PENDING for entry in schedule[1:])
        assert all(entry.amount_paid == Decimal('0.00') for entry in schedule)

    def test_daily_schedule_has_no_weekends(self):
        for offset in range(7):
            schedule = self.generator.generate(date(2024, 3, 1) + timedelta(days=offset), LoanType.DAILY)
            assert all(entry.due_date.weekday() < 5 for entry in schedule)

    def test_default_daily_length(self):
        schedule = self.generator.generate(date(2024, 1, 2), "daily")
        assert len(schedule) == 23

    def test_daily_schedule_starting_on_weekend(self):
        schedule = self.generator.generate(date(2024, 1, 6), "daily", 3)
        assert [e.due_date for e in schedule] == [date(2024, 1, 8), date(2024, 1, 9), date(2024, 1, 10)]

    def test_daily_schedule_skips_holidays(self):
        self.store.add_holiday(date(2024, 1, 3), reason="Closure")
        schedule = self.generator.generate(date(2024, 1, 2), "daily", 3)
        assert [e.due_date for e in schedule] == [date(2024, 1, 2), date(2024, 1, 4), date(2024, 1, 5)]

    def test_weekly_schedule(self):
        schedule = self.generator.generate(date(2024, 1, 2), "weekly")

        assert len(schedule) == 5
        assert [e.due_date for e in schedule] == [
            date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16),
            date(2024, 1, 23), date(2024, 1, 30)
        ]
        assert schedule[0].status == InstallmentStatus.APPROVED

    def test_weekly_entry_on_holiday_is_flagged(self):
        self.store.add_holiday(date(2024, 1, 16), reason="Market day")
        schedule = self.generator.generate(date(2024, 1, 2), "weekly")

        assert schedule[2].status == InstallmentStatus.HOLIDAY
        assert schedule[2].holiday_reason == "Market day"

    def test_invalid_inputs(self):
        with pytest.raises(ValidationError):
            self.generator.generate("not-a-date", "daily")
        with pytest.raises(ValidationError):
            self.generator.generate(date(2024, 1, 2), "monthly")


class TestResyncBase:

    def setup_method(self):
        self.calendar = BusinessCalendar(HolidayStore(InMemoryStorage()))
        self.generator = ScheduleGenerator(self.calendar)

    def test_rebuild_zeroes_amounts_and_drops_duplicate_dates(self):
        existing = [
            Installment(date(2024, 1, 2), InstallmentStatus.PAID, Decimal('100.00')),
            Installment(date(2024, 1, 3), InstallmentStatus.PARTIAL, Decimal('50.00')),
            Installment(date(2024, 1, 3), InstallmentStatus.PAID, Decimal('100.00')),
            Installment(date(2024, 1, 4), InstallmentStatus.SUBMITTED),
        ]
        rebuilt = self.generator.rebuild_for_resync(existing, date(2024, 1, 2), "daily")

        assert [e.due_date for e in rebuilt] == [date(2024, 1, 2), date(2024, 1, 3), date(2024, 1, 4)]
        assert all(e.amount_paid == Decimal('0.00') for e in rebuilt)
        assert rebuilt[0].status == InstallmentStatus.APPROVED
        assert rebuilt[1].status == InstallmentStatus.PENDING
        assert rebuilt[2].status == InstallmentStatus.SUBMITTED

    def test_rebuild_without_schedule_generates_one(self):
        rebuilt = self.generator.rebuild_for_resync([], date(2024, 1, 2), "weekly")
        assert len(rebuilt) == 5


class TestScheduleSerialization:

    def test_bad_entries_are_dropped_on_read(self):
        schedule = schedule_from_dicts([
            {"date": "2024-01-02", "status": "paid", "amount_paid": "100.00"},
            {"date": "garbage", "status": "pending"},
            {"date": "2024-01-03", "status": "unknown-status"},
        ])

        assert len(schedule) == 2
        assert schedule[0].status == InstallmentStatus.PAID
        assert schedule[1].status == InstallmentStatus.PENDING

    def test_to_dicts_shape(self):
        entry = Installment(date(2024, 1, 2), InstallmentStatus.HOLIDAY, holiday_reason="Closure")
        assert schedule_to_dicts([entry]) == [{
            "date": "2024-01-02",
            "status": "holiday",
            "amount_paid": "0.00",
            "holiday_reason": "Closure"
        }]

    def test_parse_loan_type(self):
        assert parse_loan_type(" Weekly ") == LoanType.WEEKLY
        assert parse_loan_type(LoanType.DAILY) == LoanType.DAILY
        with pytest.raises(ValidationError):
            parse_loan_type(None)
