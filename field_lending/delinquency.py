"""
Delinquency Classification Module

Works out how much of a loan should have been repaid by a given day, how much
of that is still outstanding, and how old the oldest unpaid installment is.
Used per request (outstanding queries, admission control) and in batch by the
aggregation job.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .business_calendar import BusinessCalendar, normalize_date, today_utc
from .money import ZERO, multiply, subtract, total, amount_or_zero
from .schedule import InstallmentStatus, LoanType, parse_loan_type


class DelinquencyBucket(Enum):
    """Age band of a loan's oldest unpaid installment"""
    CURRENT = "current"
    OVERDUE = "overdue"      # 30-59 days
    RECOVERY = "recovery"    # 60+ days


UNRESOLVED_STATUSES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.PARTIAL,
    InstallmentStatus.APPROVED,
)


@dataclass
class DelinquencyAssessment:
    """Classifier output for one loan on one day"""
    expected_repayment: Decimal
    outstanding_due: Decimal
    remaining_balance: Decimal
    days_past_due: int
    earliest_unresolved_date: Optional[date]
    bucket: DelinquencyBucket

    def to_dict(self) -> Dict[str, Any]:
        return {
            'expected_repayment': str(self.expected_repayment),
            'outstanding_due': str(self.outstanding_due),
            'remaining_balance': str(self.remaining_balance),
            'days_past_due': self.days_past_due,
            'earliest_unresolved_date': (
                self.earliest_unresolved_date.isoformat() if self.earliest_unresolved_date else None
            ),
            'bucket': self.bucket.value
        }


class DelinquencyClassifier:
    """
    Classifies loans into current / overdue / recovery.

    Expected repayment grows by one installment per elapsed business day after
    disbursement, capped by the schedule entries already due; once the loan
    has run past its nominal term the whole amount is due.
    """

    def __init__(self, calendar: BusinessCalendar,
                 daily_installment_count: int = 22,
                 weekly_installment_count: int = 5,
                 overdue_days: int = 30,
                 recovery_days: int = 60,
                 min_outstanding_threshold: Decimal = Decimal('0.50')):
        self.calendar = calendar
        self.daily_installment_count = daily_installment_count
        self.weekly_installment_count = weekly_installment_count
        self.overdue_days = overdue_days
        self.recovery_days = recovery_days
        self.min_outstanding_threshold = min_outstanding_threshold

    def installment_count_for(self, loan_type: Any) -> int:
        if parse_loan_type(loan_type) == LoanType.WEEKLY:
            return self.weekly_installment_count
        return self.daily_installment_count

    def expected_repayment(self, loan, as_of: Any = None) -> Decimal:
        """Amount that should have been collected by ``as_of``"""
        disbursed = normalize_date(loan.disbursed_at)
        if disbursed is None:
            return ZERO

        as_of_day = normalize_date(as_of) or today_utc()
        rolled = self.calendar.previous_business_weekday(as_of_day)

        schedule = loan.repayment_schedule
        count_till_today = sum(1 for entry in schedule if entry.due_date <= rolled)
        installment_count = self.installment_count_for(loan.loan_type)
        last_due = max((entry.due_date for entry in schedule), default=None)

        if count_till_today > installment_count or (last_due is not None and rolled > last_due):
            return loan.amount_to_be_paid

        days_elapsed = self.calendar.count_business_days(disbursed + timedelta(days=1), rolled)
        days_counted = max(0, min(days_elapsed, count_till_today - 1))
        return multiply(amount_or_zero(loan.daily_amount), days_counted)

    def earliest_unresolved_date(self, loan, as_of: date) -> Optional[date]:
        candidates = [
            entry.due_date for entry in loan.repayment_schedule
            if entry.status in UNRESOLVED_STATUSES and entry.due_date <= as_of
        ]
        return min(candidates) if candidates else None

    def classify(self, loan, as_of: Any = None) -> DelinquencyAssessment:
        """
        Assess one loan.

        Args:
            loan: Loan with schedule, disbursement date and running totals
            as_of: Day of assessment (UTC); defaults to today

        Returns:
            DelinquencyAssessment
        """
        as_of_day = normalize_date(as_of) or today_utc()

        expected = self.expected_repayment(loan, as_of_day)
        paid = amount_or_zero(loan.amount_paid_so_far)
        outstanding = max(ZERO, subtract(expected, paid))
        remaining = max(ZERO, subtract(amount_or_zero(loan.amount_to_be_paid), paid))

        earliest = self.earliest_unresolved_date(loan, as_of_day)
        if earliest is None and not loan.repayment_schedule:
            earliest = normalize_date(loan.disbursed_at)

        days_past_due = max(0, (as_of_day - earliest).days) if earliest else 0

        if remaining < self.min_outstanding_threshold or normalize_date(loan.disbursed_at) is None:
            bucket = DelinquencyBucket.CURRENT
        elif days_past_due >= self.recovery_days:
            bucket = DelinquencyBucket.RECOVERY
        elif days_past_due >= self.overdue_days:
            bucket = DelinquencyBucket.OVERDUE
        else:
            bucket = DelinquencyBucket.CURRENT

        return DelinquencyAssessment(
            expected_repayment=expected,
            outstanding_due=outstanding,
            remaining_balance=remaining,
            days_past_due=days_past_due,
            earliest_unresolved_date=earliest,
            bucket=bucket
        )

    def total_outstanding(self, loans: Iterable[Any], as_of: Any = None) -> Decimal:
        """Sum of outstanding dues over the given loans"""
        return total(self.classify(loan, as_of).outstanding_due for loan in loans)
