"""
Repayment Schedule Module

Generates the calendar of expected installments for a loan at disbursement
and rebuilds it for resynchronization from the payment ledger.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .business_calendar import BusinessCalendar, normalize_date
from .exceptions import ValidationError
from .money import ZERO, amount_or_zero


class LoanType(Enum):
    """Repayment cadence of a loan"""
    DAILY = "daily"
    WEEKLY = "weekly"


class InstallmentStatus(Enum):
    """Status of one expected due date"""
    PENDING = "pending"
    APPROVED = "approved"      # Immediately due (first entry)
    SUBMITTED = "submitted"    # Flagged upstream, preserved through allocation
    PARTIAL = "partial"
    PAID = "paid"
    HOLIDAY = "holiday"        # Zero capacity, skipped by the allocator


@dataclass
class Installment:
    """One expected due date in a repayment schedule"""
    due_date: date
    status: InstallmentStatus = InstallmentStatus.PENDING
    amount_paid: Decimal = ZERO
    holiday_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'date': self.due_date.isoformat(),
            'status': self.status.value,
            'amount_paid': str(self.amount_paid)
        }
        if self.holiday_reason is not None:
            result['holiday_reason'] = self.holiday_reason
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['Installment']:
        """Rebuild an entry; returns None when the stored date is unusable"""
        due_date = normalize_date(data.get('date'))
        if due_date is None:
            return None
        try:
            status = InstallmentStatus(data.get('status') or "pending")
        except ValueError:
            status = InstallmentStatus.PENDING
        return cls(
            due_date=due_date,
            status=status,
            amount_paid=amount_or_zero(data.get('amount_paid')),
            holiday_reason=data.get('holiday_reason')
        )


def parse_loan_type(value: Any) -> LoanType:
    if isinstance(value, LoanType):
        return value
    try:
        return LoanType(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown loan type: {value!r}", {"loan_type": value})


def schedule_from_dicts(entries: Iterable[Dict[str, Any]]) -> List[Installment]:
    schedule = []
    for data in entries or []:
        entry = Installment.from_dict(data)
        if entry is not None:
            schedule.append(entry)
    return schedule


def schedule_to_dicts(schedule: Iterable[Installment]) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in schedule]


class ScheduleGenerator:
    """
    Builds repayment schedules.

    Daily loans get ``daily_schedule_length`` entries on consecutive business
    days; weekly loans get ``weekly_installment_count`` entries seven calendar
    days apart. The first entry is always due immediately.
    """

    def __init__(self, calendar: BusinessCalendar,
                 daily_schedule_length: int = 23,
                 weekly_installment_count: int = 5):
        self.calendar = calendar
        self.daily_schedule_length = daily_schedule_length
        self.weekly_installment_count = weekly_installment_count

    def generate(self, start_date: Any, loan_type: Any,
                 installment_count: Optional[int] = None) -> List[Installment]:
        """
        Generate a fresh schedule.

        Args:
            start_date: Disbursement date
            loan_type: "daily" or "weekly"
            installment_count: Override for the number of entries

        Returns:
            Ordered list of Installment entries
        """
        start = normalize_date(start_date)
        if start is None:
            raise ValidationError(f"Invalid schedule start date: {start_date!r}")
        loan_type = parse_loan_type(loan_type)

        if loan_type == LoanType.WEEKLY:
            count = installment_count or self.weekly_installment_count
            dates = [start + timedelta(days=7 * i) for i in range(count)]
        else:
            count = installment_count or self.daily_schedule_length
            dates = []
            cursor = start
            while len(dates) < count:
                if self.calendar.is_business_day(cursor):
                    dates.append(cursor)
                cursor += timedelta(days=1)

        schedule = [
            Installment(
                due_date=day,
                status=InstallmentStatus.APPROVED if i == 0 else InstallmentStatus.PENDING
            )
            for i, day in enumerate(dates)
        ]
        return self.apply_holidays(schedule)

    def apply_holidays(self, schedule: List[Installment]) -> List[Installment]:
        """Force every entry that lands on a registered holiday to holiday status"""
        if not schedule:
            return schedule

        window = self.calendar.holidays_between(
            min(entry.due_date for entry in schedule),
            max(entry.due_date for entry in schedule)
        )
        for entry in schedule:
            if entry.due_date in window:
                entry.status = InstallmentStatus.HOLIDAY
                entry.amount_paid = ZERO
                entry.holiday_reason = window[entry.due_date]
        return schedule

    def rebuild_for_resync(self, existing: Iterable[Installment], start_date: Any,
                           loan_type: Any) -> List[Installment]:
        """
        Prepare a schedule for re-allocation from the ledger.

        Keeps the existing dates (first entry per date wins) and their
        holiday/submitted/approved flags, zeroes every amount, and makes the
        first entry due immediately. A loan without a schedule gets a fresh one.
        """
        existing = list(existing or [])
        if not existing:
            return self.generate(start_date, loan_type)

        seen = set()
        schedule = []
        for index, entry in enumerate(existing):
            if entry.due_date in seen:
                continue
            seen.add(entry.due_date)

            status = entry.status
            if status not in (InstallmentStatus.HOLIDAY, InstallmentStatus.SUBMITTED,
                              InstallmentStatus.APPROVED):
                status = InstallmentStatus.APPROVED if index == 0 else InstallmentStatus.PENDING

            schedule.append(Installment(
                due_date=entry.due_date,
                status=status,
                amount_paid=ZERO,
                holiday_reason=entry.holiday_reason
            ))

        schedule.sort(key=lambda e: e.due_date)
        first = schedule[0]
        if first.status not in (InstallmentStatus.SUBMITTED, InstallmentStatus.HOLIDAY):
            first.status = InstallmentStatus.APPROVED

        return schedule
