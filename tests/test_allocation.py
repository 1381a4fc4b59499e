"""
Tests for payment ledger sanitization and allocation

Allocation must conserve money: whatever the sanitized ledger holds ends up
spread across schedule entries, and nothing else.
"""

import json
import pytest
from datetime import date
from decimal import Decimal

from field_lending.storage import InMemoryStorage
from field_lending.business_calendar import BusinessCalendar, HolidayStore
from field_lending.schedule import Installment, InstallmentStatus, ScheduleGenerator
from field_lending.allocation import (
    Payment, PaymentAllocator, derive_payment_id, sanitize_ledger
)
from field_lending.exceptions import InvalidScheduleStateError


class TestSanitizeLedger:

    def test_drops_malformed_entries(self):
        ledger = sanitize_ledger([
            {"id": "p1", "amount": "100.00", "date": "2024-01-02"},
            {"id": "p2", "amount": "-5", "date": "2024-01-02"},
            {"id": "p3", "amount": "0", "date": "2024-01-02"},
            {"id": "p4", "amount": "NaN", "date": "2024-01-02"},
            {"id": "p5", "amount": "abc", "date": "2024-01-02"},
            {"id": "p6", "amount": "50.00", "date": "not-a-date"},
            {"id": "p7", "amount": 25, "payment_date": "2024-01-03"},
        ])

        assert [p.id for p in ledger] == ["p1", "p7"]
        assert ledger[1].amount == Decimal('25.00')

    def test_duplicate_ids_keep_first(self):
        ledger = sanitize_ledger([
            {"id": "p1", "amount": "100.00", "date": "2024-01-02"},
            {"id": "p1", "amount": "100.00", "date": "2024-01-02"},
            {"id": "p1", "amount": "999.00", "date": "2024-01-05"},
        ])
        assert len(ledger) == 1
        assert ledger[0].amount == Decimal('100.00')

    def test_missing_id_is_derived(self):
        ledger = sanitize_ledger([{"amount": "100", "date": "2024-01-02"}])
        assert ledger[0].id == derive_payment_id(date(2024, 1, 2), Decimal('100.00'))
        assert ledger[0].id.startswith("PAY-")

    def test_sorted_by_date_then_id(self):
        ledger = sanitize_ledger([
            {"id": "b", "amount": "1", "date": "2024-01-03"},
            {"id": "c", "amount": "1", "date": "2024-01-02"},
            {"id": "a", "amount": "1", "date": "2024-01-03"},
        ])
        assert [p.id for p in ledger] == ["c", "a", "b"]

    def test_resanitizing_is_idempotent(self):
        raw = [
            {"amount": "100", "date": "2024-01-02"},
            {"id": "x", "amount": "30.555", "date": "2024-01-02T08:00:00Z"},
            {"id": "x", "amount": "30", "date": "2024-01-02"},
            {"id": "y", "amount": "-1", "date": "2024-01-02"},
        ]
        once = [p.to_dict() for p in sanitize_ledger(raw)]
        twice = [p.to_dict() for p in sanitize_ledger(once)]

        assert json.dumps(once, sort_keys=True) == json.dumps(twice, sort_keys=True)

    def test_accepts_payment_objects(self):
        payments = [Payment(amount=Decimal('10.00'), payment_date=date(2024, 1, 2), id="p1")]
        assert sanitize_ledger(payments) == payments


class TestPaymentAllocator:

    def setup_method(self):
        self.store = HolidayStore(InMemoryStorage())
        self.calendar = BusinessCalendar(self.store)
        self.generator = ScheduleGenerator(self.calendar)
        self.allocator = PaymentAllocator(self.calendar)
        self.schedule = self.generator.generate(date(2024, 1, 2), "daily", 22)

    def test_overflow_payment_rolls_forward(self):
        result = self.allocator.allocate(
            self.schedule, [{"id": "p1", "amount": "250", "date": "2024-01-02"}], Decimal('100'))

        entries = result.schedule
        assert entries[0].amount_paid == Decimal('100.00')
        assert entries[0].status == InstallmentStatus.PAID
        assert entries[1].amount_paid == Decimal('100.00')
        assert entries[1].status == InstallmentStatus.PAID
        assert entries[2].amount_paid == Decimal('50.00')
        assert entries[2].status == InstallmentStatus.PARTIAL
        assert entries[3].status == InstallmentStatus.PENDING
        assert result.amount_paid_so_far == Decimal('250.00')

    def test_input_schedule_not_mutated(self):
        self.allocator.allocate(self.schedule, [{"id": "p1", "amount": "100", "date": "2024-01-02"}], 100)
        assert self.schedule[0].amount_paid == Decimal('0.00')
        assert self.schedule[0].status == InstallmentStatus.APPROVED

    def test_duplicate_payment_counted_once(self):
        payment = {"id": "client-1", "amount": "500", "date": "2024-02-01"}
        result = self.allocator.allocate(self.schedule, [payment, dict(payment)], Decimal('100'))
        assert result.amount_paid_so_far == Decimal('500.00')

    def test_capacity_invariant(self):
        ledger = [
            {"id": "p1", "amount": "75.50", "date": "2024-01-02"},
            {"id": "p2", "amount": "120.25", "date": "2024-01-04"},
            {"id": "p3", "amount": "33.33", "date": "2024-01-06"},   # Saturday
        ]
        result = self.allocator.allocate(self.schedule, ledger, Decimal('100'))

        assert sum(e.amount_paid for e in result.schedule) == result.amount_paid_so_far
        assert result.amount_paid_so_far == Decimal('229.08')
        assert result.total_applied == result.amount_paid_so_far

    def test_weekend_payment_lands_on_next_business_day(self):
        result = self.allocator.allocate(
            self.schedule, [{"id": "p1", "amount": "40", "date": "2024-01-06"}], Decimal('100'))
        by_date = {e.due_date: e for e in result.schedule}
        assert by_date[date(2024, 1, 8)].amount_paid == Decimal('40.00')

    def test_payment_beyond_horizon_extends_schedule(self):
        """Money is never dropped even when it exceeds the generated schedule"""
        result = self.allocator.allocate(
            self.schedule, [{"id": "p1", "amount": "2500", "date": "2024-01-02"}], Decimal('100'))

        assert result.amount_paid_so_far == Decimal('2500.00')
        assert len(result.schedule) == 25
        assert result.schedule[-1].due_date == date(2024, 2, 5)
        assert all(e.status == InstallmentStatus.PAID for e in result.schedule)

    def test_holiday_override_after_allocation(self):
        ledger = [{"id": "p1", "amount": "300", "date": "2024-01-02"}]
        before = self.allocator.allocate(self.schedule, ledger, Decimal('100'))
        assert before.schedule[1].amount_paid == Decimal('100.00')

        self.store.add_holiday(date(2024, 1, 3), reason="Flooding")
        after = self.allocator.allocate(before.schedule, ledger, Decimal('100'))

        by_date = {e.due_date: e for e in after.schedule}
        assert by_date[date(2024, 1, 3)].status == InstallmentStatus.HOLIDAY
        assert by_date[date(2024, 1, 3)].amount_paid == Decimal('0.00')
        assert by_date[date(2024, 1, 3)].holiday_reason == "Flooding"
        assert by_date[date(2024, 1, 5)].amount_paid == Decimal('100.00')
        assert after.amount_paid_so_far == Decimal('300.00')

    def test_submitted_status_preserved_when_unpaid(self):
        self.schedule[4].status = InstallmentStatus.SUBMITTED
        result = self.allocator.allocate(self.schedule, [], Decimal('100'))
        assert result.schedule[4].status == InstallmentStatus.SUBMITTED
        assert result.schedule[0].status == InstallmentStatus.APPROVED

    def test_paid_entry_reverts_when_ledger_shrinks(self):
        paid = self.allocator.allocate(
            self.schedule, [{"id": "p1", "amount": "100", "date": "2024-01-03"}], Decimal('100'))
        assert paid.schedule[1].status == InstallmentStatus.PAID

        resynced = self.allocator.allocate(paid.schedule, [], Decimal('100'))
        assert resynced.schedule[1].status == InstallmentStatus.PENDING
        assert resynced.schedule[1].amount_paid == Decimal('0.00')

    def test_invalid_per_installment_amount(self):
        for value in (0, "-10", None, "abc"):
            with pytest.raises(InvalidScheduleStateError):
                self.allocator.allocate(self.schedule, [], value)

    def test_empty_schedule_builds_entries_from_payments(self):
        result = self.allocator.allocate([], [{"id": "p1", "amount": "150", "date": "2024-01-05"}], 100)
        assert [e.due_date for e in result.schedule] == [date(2024, 1, 5), date(2024, 1, 8)]
        assert result.schedule[0].status == InstallmentStatus.PAID
        assert result.schedule[1].status == InstallmentStatus.PARTIAL
