"""
Payment Allocation Module

Sanitizes a loan's payment ledger and distributes every payment across the
repayment schedule in date order, rolling overflow forward to the following
business days. The schedule and the running total are always derived from
the ledger, never patched incrementally.
"""

import copy
import hashlib
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .business_calendar import BusinessCalendar, normalize_date
from .exceptions import InvalidScheduleStateError
from .money import ZERO, add, subtract, to_amount, total, is_effectively_zero
from .schedule import Installment, InstallmentStatus


@dataclass
class Payment:
    """One money-received event in a loan's payment ledger"""
    amount: Decimal
    payment_date: date
    id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': str(self.amount),
            'date': self.payment_date.isoformat()
        }


@dataclass
class AllocationResult:
    """Outcome of allocating a ledger against a schedule"""
    schedule: List[Installment]
    ledger: List[Payment]
    amount_paid_so_far: Decimal
    total_applied: Decimal


def derive_payment_id(payment_date: date, amount: Decimal) -> str:
    """Stable id for a ledger entry that arrived without one"""
    digest = hashlib.sha256(f"{payment_date.isoformat()}|{amount}".encode('utf-8')).hexdigest()
    return f"PAY-{digest[:16]}"


def _field(raw: Any, *names: str) -> Any:
    for name in names:
        if isinstance(raw, dict):
            if name in raw:
                return raw[name]
        elif hasattr(raw, name):
            return getattr(raw, name)
    return None


def sanitize_ledger(raw_ledger: Optional[Iterable[Any]]) -> List[Payment]:
    """
    Clean a payment ledger.

    Drops entries with a non-positive, non-finite or unparseable amount and
    entries with an unparseable date, assigns a derived id to entries without
    one, keeps only the first entry for each id, and sorts by (date, id).
    Running it on its own output returns an identical ledger.
    """
    seen_ids = set()
    payments: List[Payment] = []

    for raw in raw_ledger or []:
        amount = to_amount(_field(raw, 'amount'))
        if amount is None or amount <= ZERO:
            continue

        payment_date = normalize_date(_field(raw, 'payment_date', 'date'))
        if payment_date is None:
            continue

        payment_id = _field(raw, 'id')
        payment_id = str(payment_id).strip() if payment_id is not None else ""
        if not payment_id:
            payment_id = derive_payment_id(payment_date, amount)

        if payment_id in seen_ids:
            continue
        seen_ids.add(payment_id)

        payments.append(Payment(amount=amount, payment_date=payment_date, id=payment_id))

    payments.sort(key=lambda p: (p.payment_date, p.id))
    return payments


class PaymentAllocator:
    """Distributes sanitized payments over a repayment schedule"""

    def __init__(self, calendar: BusinessCalendar):
        self.calendar = calendar

    def allocate(self, schedule: Iterable[Installment], ledger: Iterable[Any],
                 per_installment_amount: Any) -> AllocationResult:
        """
        Re-derive a schedule's paid amounts and statuses from a ledger.

        Args:
            schedule: Current schedule entries (not mutated)
            ledger: Raw or sanitized payment ledger
            per_installment_amount: Capacity of each installment

        Returns:
            AllocationResult with the rebuilt schedule and sanitized ledger

        Raises:
            InvalidScheduleStateError: If the per-installment amount is not positive
        """
        per_installment = to_amount(per_installment_amount)
        if per_installment is None or per_installment <= ZERO:
            raise InvalidScheduleStateError(
                "Loan is missing a valid per-installment amount",
                {"per_installment_amount": str(per_installment_amount)}
            )

        payments = sanitize_ledger(ledger)
        entries = [copy.copy(entry) for entry in schedule]

        for entry in entries:
            holiday = self.calendar.holiday_for(entry.due_date)
            if holiday is not None:
                entry.status = InstallmentStatus.HOLIDAY
                entry.holiday_reason = holiday.reason
            entry.amount_paid = ZERO

        by_date: Dict[date, Installment] = {}
        for entry in entries:
            by_date.setdefault(entry.due_date, entry)

        total_applied = ZERO
        for payment in payments:
            remaining = payment.amount
            cursor = payment.payment_date

            while not is_effectively_zero(remaining):
                day = self.calendar.business_day_on_or_after(cursor)
                entry = by_date.get(day)
                if entry is None:
                    # Payment reaches past the generated horizon
                    entry = Installment(due_date=day)
                    entries.append(entry)
                    by_date[day] = entry

                if entry.status == InstallmentStatus.HOLIDAY:
                    cursor = self.calendar.next_business_day(day)
                    continue

                capacity = subtract(per_installment, entry.amount_paid)
                if capacity <= ZERO:
                    cursor = self.calendar.next_business_day(day)
                    continue

                applied = min(remaining, capacity)
                entry.amount_paid = add(entry.amount_paid, applied)
                remaining = subtract(remaining, applied)
                total_applied = add(total_applied, applied)

                if not is_effectively_zero(remaining):
                    cursor = self.calendar.next_business_day(day)

        entries.sort(key=lambda e: e.due_date)
        for index, entry in enumerate(entries):
            self._finalize_status(entry, index, per_installment)

        return AllocationResult(
            schedule=entries,
            ledger=payments,
            amount_paid_so_far=total(entry.amount_paid for entry in entries),
            total_applied=total_applied
        )

    @staticmethod
    def _finalize_status(entry: Installment, index: int, per_installment: Decimal) -> None:
        if entry.status == InstallmentStatus.HOLIDAY:
            entry.amount_paid = ZERO
            return

        if entry.amount_paid >= per_installment:
            entry.status = InstallmentStatus.PAID
        elif entry.amount_paid > ZERO:
            entry.status = InstallmentStatus.PARTIAL
        elif entry.status == InstallmentStatus.SUBMITTED:
            pass
        elif index == 0:
            entry.status = InstallmentStatus.APPROVED
        else:
            entry.status = InstallmentStatus.PENDING
