"""
Loan Module

Loan applications and their lifecycle: submission by an agent, verification
calls, edit requests, approval, disbursement, rejection, repayment recording,
schedule resynchronization and bulk reassignment between agents.
"""

import secrets
import string
import time
import uuid
from contextlib import ExitStack, contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .business_calendar import BusinessCalendar, normalize_date, today_utc
from .schedule import (
    Installment, LoanType, ScheduleGenerator, parse_loan_type,
    schedule_from_dicts, schedule_to_dicts
)
from .allocation import Payment, PaymentAllocator, sanitize_ledger
from .delinquency import DelinquencyAssessment, DelinquencyClassifier
from .agents import AgentManager
from .rates import RateProvider
from .exceptions import (
    ValidationError, NotFoundError, StateConflictError, BusinessRuleError,
    PaymentExceedsBalanceError, DefaultingLimitExceededError,
    NonBusinessDayError, RemittanceAlreadyFiledError
)
from .money import (
    ZERO, add, subtract, multiply, divide, total, to_amount, amount_or_zero,
    approximately_equal
)
from .logging_config import get_logger, log_action


logger = get_logger("fieldbook.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    WAITING_FOR_APPROVAL = "waiting_for_approval"  # Submitted by the agent
    APPROVED = "approved"                          # Amounts fixed, not yet paid out
    ACTIVE = "active"                              # Disbursed and collecting
    FULLY_PAID = "fully_paid"
    REJECTED = "rejected"
    EDITED = "edited"                              # Sent back for corrections


CALL_CHECK_FLAGS = ('call_cso', 'call_customer', 'call_guarantor', 'call_group_leader')
REQUIRED_SECTIONS = ('customer_details', 'business_details', 'bank_details', 'guarantor_details')
OPTIONAL_SECTIONS = ('group_details', 'pictures')


@dataclass
class CallChecks:
    """Verification calls an administrator makes before approval"""
    call_cso: bool = False
    call_customer: bool = False
    call_guarantor: bool = False
    call_group_leader: bool = False

    @property
    def all_verified(self) -> bool:
        return all(getattr(self, flag) for flag in CALL_CHECK_FLAGS)

    def missing(self) -> List[str]:
        return [flag for flag in CALL_CHECK_FLAGS if not getattr(self, flag)]

    def to_dict(self) -> Dict[str, bool]:
        return {flag: getattr(self, flag) for flag in CALL_CHECK_FLAGS}


@dataclass
class Loan(StorageRecord):
    """A loan application and, once disbursed, its repayment state"""
    agent_id: str
    agent_name: str
    branch: str
    branch_id: str
    loan_type: LoanType
    status: LoanStatus
    amount_requested: Decimal
    customer_details: Dict[str, Any] = field(default_factory=dict)
    business_details: Dict[str, Any] = field(default_factory=dict)
    bank_details: Dict[str, Any] = field(default_factory=dict)
    guarantor_details: Dict[str, Any] = field(default_factory=dict)
    group_details: Dict[str, Any] = field(default_factory=dict)
    pictures: Dict[str, Any] = field(default_factory=dict)
    guarantor_form_pic: Optional[str] = None
    agent_signature: Optional[str] = None
    call_checks: CallChecks = field(default_factory=CallChecks)

    amount_approved: Decimal = ZERO
    interest_rate: Decimal = ZERO
    interest: Decimal = ZERO
    amount_to_be_paid: Decimal = ZERO
    daily_amount: Decimal = ZERO   # Per-installment amount (per week for weekly loans)
    amount_paid_so_far: Decimal = ZERO
    amount_disbursed: Decimal = ZERO
    application_fee: Decimal = ZERO

    repayment_schedule: List[Installment] = field(default_factory=list)
    payment_ledger: List[Payment] = field(default_factory=list)

    rejection_reason: Optional[str] = None
    edited_reason: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    disbursement_picture: Optional[str] = None

    @property
    def remaining_balance(self) -> Decimal:
        return max(ZERO, subtract(self.amount_to_be_paid, self.amount_paid_so_far))

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE


MONEY_FIELDS = (
    'amount_requested', 'amount_approved', 'interest_rate', 'interest',
    'amount_to_be_paid', 'daily_amount', 'amount_paid_so_far',
    'amount_disbursed', 'application_fee'
)


def generate_loan_id() -> str:
    """Human-readable loan id: LN-<epoch ms>-<4 uppercase alphanumerics>"""
    alphabet = string.ascii_uppercase + string.digits
    suffix = ''.join(secrets.choice(alphabet) for _ in range(4))
    return f"LN-{int(time.time() * 1000)}-{suffix}"


class LoanManager:
    """
    Manages the loan lifecycle from submission through full repayment.

    Every read-modify-write on a loan runs under the loan's document lock and
    a storage transaction, so concurrent payments never allocate against a
    stale schedule.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        calendar: BusinessCalendar,
        schedule_generator: ScheduleGenerator,
        allocator: PaymentAllocator,
        classifier: DelinquencyClassifier,
        agent_manager: AgentManager,
        rate_provider: RateProvider,
        application_fee: Decimal = Decimal('2000.00')
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.calendar = calendar
        self.schedule_generator = schedule_generator
        self.allocator = allocator
        self.classifier = classifier
        self.agent_manager = agent_manager
        self.rate_provider = rate_provider
        self.application_fee = application_fee
        # Set by the system wiring; closes a day's books for payments
        self.remittance_ledger = None

        self.loans_table = "loans"

    # Submission and pre-approval edits

    def submit_loan(self, agent_id: str, payload: Dict[str, Any],
                    user_id: Optional[str] = None) -> Loan:
        """
        Submit a new loan application on behalf of an agent

        Args:
            agent_id: Submitting agent
            payload: Application sections, amount_requested, loan_type and an
                optional client-chosen loan_id

        Returns:
            Created Loan in waiting_for_approval

        Raises:
            ValidationError: Missing sections, bad amount or loan type
            NotFoundError: Unknown agent
            StateConflictError: Inactive agent or duplicate loan id
            DefaultingLimitExceededError: Agent's outstanding dues exceed
                their defaulting target
        """
        if not isinstance(payload, dict):
            raise ValidationError("Loan payload must be an object")

        self._validate_sections(payload)
        amount_requested = self._validate_amount_requested(payload.get('amount_requested'))
        if not payload.get('loan_type'):
            raise ValidationError("Loan amount and type are required")
        loan_type = parse_loan_type(payload.get('loan_type'))

        agent = self.agent_manager.require_agent(agent_id)
        if not agent.is_active:
            raise StateConflictError(f"Agent {agent_id} is inactive", {"agent_id": agent_id})

        self._check_defaulting_limit(agent_id)

        loan_id = payload.get('loan_id') or generate_loan_id()
        if self.storage.exists(self.loans_table, loan_id):
            raise StateConflictError("Loan ID already exists", {"loan_id": loan_id})

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            agent_id=agent.id,
            agent_name=agent.full_name,
            branch=agent.branch,
            branch_id=agent.branch_id,
            agent_signature=agent.signature,
            loan_type=loan_type,
            status=LoanStatus.WAITING_FOR_APPROVAL,
            amount_requested=amount_requested,
            customer_details=dict(payload['customer_details']),
            business_details=dict(payload['business_details']),
            bank_details=dict(payload['bank_details']),
            guarantor_details=dict(payload['guarantor_details']),
            group_details=dict(payload.get('group_details') or {}),
            pictures=dict(payload.get('pictures') or {}),
            guarantor_form_pic=payload.get('guarantor_form_pic'),
            application_fee=self.application_fee
        )

        with self.storage.lock(self.loans_table, loan.id):
            if self.storage.exists(self.loans_table, loan.id):
                raise StateConflictError("Loan ID already exists", {"loan_id": loan.id})
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_SUBMITTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "agent_id": agent.id,
                "amount_requested": amount_requested,
                "loan_type": loan_type.value
            },
            user_id=user_id
        )
        log_action(logger, "info", f"Loan {loan.id} submitted",
                   user_id=user_id, action="submit_loan", resource=f"loan:{loan.id}",
                   extra={"agent_id": agent.id, "amount_requested": str(amount_requested)})
        return loan

    def update_call_checks(self, loan_id: str, user_id: Optional[str] = None,
                           **flags: bool) -> Loan:
        """Set any of call_cso, call_customer, call_guarantor, call_group_leader"""
        unknown = [name for name in flags if name not in CALL_CHECK_FLAGS]
        if unknown:
            raise ValidationError(f"Unknown call checks: {', '.join(unknown)}")
        for name, value in flags.items():
            if not isinstance(value, bool):
                raise ValidationError(f"{name} must be a boolean")

        with self.storage.lock(self.loans_table, loan_id):
            loan = self.require_loan(loan_id)
            if loan.status not in (LoanStatus.WAITING_FOR_APPROVAL, LoanStatus.EDITED):
                raise StateConflictError(
                    f"Call checks cannot change on a {loan.status.value} loan",
                    {"status": loan.status.value}
                )
            for name, value in flags.items():
                setattr(loan.call_checks, name, value)
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CALL_CHECKS_UPDATED,
            entity_type="loan",
            entity_id=loan_id,
            metadata=loan.call_checks.to_dict(),
            user_id=user_id
        )
        return loan

    def request_edit(self, loan_id: str, reason: str, user_id: Optional[str] = None) -> Loan:
        """Send a waiting loan back to its agent for corrections"""
        reason = self._require_reason(reason, "Edit reason is required")

        with self.storage.lock(self.loans_table, loan_id):
            loan = self.require_loan(loan_id)
            self._require_status(loan, (LoanStatus.WAITING_FOR_APPROVAL,), "request edits on")
            loan.status = LoanStatus.EDITED
            loan.edited_reason = reason
            self._save_loan(loan)

        self._log_transition(AuditEventType.LOAN_EDIT_REQUESTED, loan, user_id, {"reason": reason})
        return loan

    def resubmit_loan(self, loan_id: str, updates: Optional[Dict[str, Any]] = None,
                      user_id: Optional[str] = None) -> Loan:
        """
        Resubmit an edited loan. Payment ledger and schedule are cleared.
        """
        updates = updates or {}
        allowed = set(REQUIRED_SECTIONS + OPTIONAL_SECTIONS +
                      ('amount_requested', 'loan_type', 'guarantor_form_pic'))
        unknown = [key for key in updates if key not in allowed]
        if unknown:
            raise ValidationError(f"Fields cannot be resubmitted: {', '.join(unknown)}")

        with self.storage.lock(self.loans_table, loan_id):
            loan = self.require_loan(loan_id)
            self._require_status(loan, (LoanStatus.EDITED,), "resubmit")

            merged = {name: getattr(loan, name) for name in REQUIRED_SECTIONS}
            merged.update({k: v for k, v in updates.items() if k in REQUIRED_SECTIONS})
            self._validate_sections(merged)

            for name in REQUIRED_SECTIONS + OPTIONAL_SECTIONS:
                if name in updates:
                    setattr(loan, name, dict(updates[name] or {}))
            if 'amount_requested' in updates:
                loan.amount_requested = self._validate_amount_requested(updates['amount_requested'])
            if 'loan_type' in updates:
                loan.loan_type = parse_loan_type(updates['loan_type'])
            if 'guarantor_form_pic' in updates:
                loan.guarantor_form_pic = updates['guarantor_form_pic']

            loan.status = LoanStatus.WAITING_FOR_APPROVAL
            loan.payment_ledger = []
            loan.repayment_schedule = []
            loan.amount_paid_so_far = ZERO
            self._save_loan(loan)

        self._log_transition(AuditEventType.LOAN_RESUBMITTED, loan, user_id,
                             {"updated_fields": sorted(updates)})
        return loan

    # Approval, disbursement, rejection

    def approve_loan(self, loan_id: str, amount_approved: Any,
                     user_id: Optional[str] = None) -> Loan:
        """
        Approve a waiting loan.

        Interest is the approved amount times the provider's current rate;
        the per-installment amount divides the total by the installment count
        of the loan type.
        """
        amount = to_amount(amount_approved)
        if amount is None or amount <= ZERO:
            raise ValidationError("A valid amount_approved greater than zero is required",
                                  {"amount_approved": str(amount_approved)})

        # Fetched before the transaction; a remote provider may be slow
        rate = self.rate_provider.current_rate()

        with self.storage.lock(self.loans_table, loan_id):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.status == LoanStatus.APPROVED:
                    raise StateConflictError("Loan is already approved", {"status": loan.status.value})
                self._require_status(loan, (LoanStatus.WAITING_FOR_APPROVAL,), "approve")

                if not loan.call_checks.all_verified:
                    raise BusinessRuleError(
                        "All verification calls must be completed before approval",
                        {"missing_call_checks": loan.call_checks.missing()}
                    )

                installment_count = self.classifier.installment_count_for(loan.loan_type)

                loan.amount_approved = amount
                loan.interest_rate = rate
                loan.interest = multiply(amount, rate)
                loan.amount_to_be_paid = add(amount, loan.interest)
                loan.daily_amount = divide(loan.amount_to_be_paid, installment_count)
                loan.status = LoanStatus.APPROVED
                self._save_loan(loan)

        self._log_transition(AuditEventType.LOAN_APPROVED, loan, user_id, {
            "amount_approved": loan.amount_approved,
            "interest_rate": loan.interest_rate,
            "interest": loan.interest,
            "amount_to_be_paid": loan.amount_to_be_paid,
            "daily_amount": loan.daily_amount
        })
        return loan

    def disburse_loan(self, loan_id: str, disbursement_picture: Optional[str] = None,
                      disbursed_at: Optional[Any] = None,
                      user_id: Optional[str] = None) -> Loan:
        """
        Pay out an approved loan and generate its repayment schedule.

        The loan is left untouched if it is not approved or has no approved
        amount.
        """
        when = datetime.now(timezone.utc)
        if disbursed_at is not None:
            day = normalize_date(disbursed_at)
            if day is None:
                raise ValidationError("A valid disbursement date is required")
            if isinstance(disbursed_at, datetime):
                when = disbursed_at if disbursed_at.tzinfo else disbursed_at.replace(tzinfo=timezone.utc)
                when = when.astimezone(timezone.utc)
            else:
                when = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)

        with self.storage.lock(self.loans_table, loan_id):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                self._require_status(loan, (LoanStatus.APPROVED,), "disburse")
                if loan.amount_approved <= ZERO:
                    raise StateConflictError("Loan has no approved amount to disburse")

                schedule = self.schedule_generator.generate(when.date(), loan.loan_type)

                loan.amount_disbursed = loan.amount_approved
                loan.disbursed_at = when
                if disbursement_picture:
                    loan.disbursement_picture = disbursement_picture
                loan.repayment_schedule = schedule
                loan.payment_ledger = []
                loan.amount_paid_so_far = ZERO
                loan.status = LoanStatus.ACTIVE
                self._save_loan(loan)

        self._log_transition(AuditEventType.LOAN_DISBURSED, loan, user_id, {
            "amount_disbursed": loan.amount_disbursed,
            "disbursed_at": loan.disbursed_at,
            "installments": len(loan.repayment_schedule)
        })
        return loan

    def reject_loan(self, loan_id: str, reason: str, user_id: Optional[str] = None) -> Loan:
        reason = self._require_reason(reason, "Rejection reason is required")

        with self.storage.lock(self.loans_table, loan_id):
            loan = self.require_loan(loan_id)
            self._require_status(loan, (LoanStatus.WAITING_FOR_APPROVAL, LoanStatus.EDITED), "reject")
            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason
            loan.repayment_schedule = []
            self._save_loan(loan)

        self._log_transition(AuditEventType.LOAN_REJECTED, loan, user_id, {"reason": reason})
        return loan

    # Repayment

    def record_payment(self, loan_id: str, amount: Any, payment_date: Optional[Any] = None,
                       payment_id: Optional[str] = None, user_id: Optional[str] = None) -> Loan:
        """
        Record a repayment and re-allocate the whole ledger.

        Args:
            loan_id: Loan being repaid
            amount: Amount received
            payment_date: Day of collection (defaults to today, UTC)
            payment_id: Client-generated id; a repeat of a known id is a no-op

        Returns:
            Updated Loan

        Raises:
            ValidationError: Bad amount or date
            NonBusinessDayError: Weekend or holiday
            StateConflictError: Loan is not active
            RemittanceAlreadyFiledError: Agent already remitted for that day
            PaymentExceedsBalanceError: Amount exceeds the remaining balance
        """
        value = to_amount(amount)
        if value is None or value <= ZERO:
            raise ValidationError("A valid payment amount greater than zero is required",
                                  {"amount": str(amount)})

        day = today_utc() if payment_date is None else normalize_date(payment_date)
        if day is None:
            raise ValidationError("A valid payment date is required")
        if day > today_utc():
            raise ValidationError("Payments cannot be recorded for future dates",
                                  {"date": day.isoformat()})

        if not self.calendar.is_business_day(day):
            raise NonBusinessDayError(
                "Payments cannot be recorded on weekends or holidays",
                {"date": day.isoformat()}
            )

        loan = self.require_loan(loan_id)
        self._require_status(loan, (LoanStatus.ACTIVE,), "record payments on")
        agent_id = loan.agent_id

        payment_id = str(payment_id).strip() if payment_id else ""

        day_lock = (self.remittance_ledger.lock_day(agent_id, day)
                    if self.remittance_ledger is not None else nullcontext())

        # Remittance filing takes the same day lock, so the day cannot close mid-write
        with day_lock, self.storage.lock(self.loans_table, loan_id):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                self._require_status(loan, (LoanStatus.ACTIVE,), "record payments on")
                if loan.agent_id != agent_id:
                    raise StateConflictError("Loan was reassigned while the payment was recorded",
                                             {"loan_id": loan_id, "agent_id": loan.agent_id})

                disbursed_on = normalize_date(loan.disbursed_at)
                if disbursed_on is not None and day < disbursed_on:
                    raise ValidationError("Payment date is before the loan was disbursed",
                                          {"date": day.isoformat(),
                                           "disbursed_at": disbursed_on.isoformat()})

                if self.remittance_ledger is not None and self.remittance_ledger.has_remittance(agent_id, day):
                    raise RemittanceAlreadyFiledError(
                        "Remittance has already been filed for this day",
                        {"agent_id": agent_id, "date": day.isoformat()}
                    )

                if payment_id and any(p.id == payment_id for p in loan.payment_ledger):
                    logger.info(f"Payment {payment_id} already recorded on loan {loan_id}")
                    return loan

                remaining = loan.remaining_balance
                if value > remaining:
                    raise PaymentExceedsBalanceError(remaining)

                payment = Payment(
                    amount=value,
                    payment_date=day,
                    id=payment_id or f"PAY-{uuid.uuid4().hex[:16]}"
                )
                self._apply_ledger(loan, loan.repayment_schedule, loan.payment_ledger + [payment])
                self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "payment_id": payment.id,
                "amount": value,
                "date": day.isoformat(),
                "amount_paid_so_far": loan.amount_paid_so_far
            },
            user_id=user_id
        )
        log_action(logger, "info", f"Payment of {value} recorded on loan {loan.id}",
                   user_id=user_id, action="record_payment", resource=f"loan:{loan.id}",
                   extra={"payment_id": payment.id, "date": day.isoformat(),
                          "amount_paid_so_far": str(loan.amount_paid_so_far)})
        if loan.status == LoanStatus.FULLY_PAID:
            self._log_transition(AuditEventType.LOAN_FULLY_PAID, loan, user_id,
                                 {"amount_paid_so_far": loan.amount_paid_so_far})
        return loan

    def sync_repayment_schedule(self, loan_id: str, user_id: Optional[str] = None) -> Loan:
        """
        Rebuild the schedule and running total from the payment ledger.

        Depends only on the ledger, the disbursement date and the loan type,
        so it can be repeated safely; the result is written once.
        """
        with self.storage.lock(self.loans_table, loan_id):
            with self.storage.atomic():
                data = self.storage.load(self.loans_table, loan_id)
                if not data:
                    raise NotFoundError(f"Loan {loan_id} not found", {"loan_id": loan_id})
                loan = self._loan_from_dict(data)
                self._require_status(loan, (LoanStatus.ACTIVE, LoanStatus.FULLY_PAID), "resync the schedule of")

                raw_ledger = data.get('payment_ledger') or []
                repaired = [p.to_dict() for p in loan.payment_ledger] != raw_ledger

                start = (normalize_date(loan.disbursed_at)
                         or (loan.payment_ledger[0].payment_date if loan.payment_ledger else None)
                         or today_utc())
                base = self.schedule_generator.rebuild_for_resync(
                    loan.repayment_schedule, start, loan.loan_type)
                self._apply_ledger(loan, base, loan.payment_ledger)
                self._save_loan(loan)

        if repaired:
            log_action(logger, "warning", f"Payment ledger of loan {loan_id} repaired",
                       user_id=user_id, action="repair_ledger", resource=f"loan:{loan_id}",
                       extra={"entries_before": len(raw_ledger), "entries_after": len(loan.payment_ledger)})
        self._log_transition(AuditEventType.LOAN_SCHEDULE_SYNCED, loan, user_id, {
            "amount_paid_so_far": loan.amount_paid_so_far,
            "ledger_repaired": repaired
        })
        return loan

    def _apply_ledger(self, loan: Loan, schedule: Iterable[Installment],
                      ledger: Iterable[Any]) -> None:
        result = self.allocator.allocate(schedule, ledger, loan.daily_amount)
        loan.repayment_schedule = result.schedule
        loan.payment_ledger = result.ledger
        loan.amount_paid_so_far = result.amount_paid_so_far

        if (loan.status == LoanStatus.ACTIVE and loan.amount_to_be_paid > ZERO
                and (loan.amount_paid_so_far >= loan.amount_to_be_paid
                     or approximately_equal(loan.amount_paid_so_far, loan.amount_to_be_paid))):
            loan.status = LoanStatus.FULLY_PAID

    # Ownership

    def transfer_loans(self, loan_ids: List[str], agent_id: str,
                       user_id: Optional[str] = None) -> List[Loan]:
        """Reassign loans to another agent, updating the denormalized agent fields"""
        if not loan_ids:
            raise ValidationError("At least one loan id is required")
        agent = self.agent_manager.require_agent(agent_id)

        missing = [loan_id for loan_id in loan_ids if not self.storage.exists(self.loans_table, loan_id)]
        if missing:
            raise NotFoundError(f"Loans not found: {', '.join(missing)}", {"loan_ids": missing})

        transferred = []
        with self.lock_loans(loan_ids), self.storage.atomic():
            for loan_id in loan_ids:
                loan = self.require_loan(loan_id)
                previous_agent = loan.agent_id
                loan.agent_id = agent.id
                loan.agent_name = agent.full_name
                loan.branch = agent.branch
                loan.branch_id = agent.branch_id
                self._save_loan(loan)
                transferred.append((loan, previous_agent))

        for loan, previous_agent in transferred:
            self._log_transition(AuditEventType.LOAN_TRANSFERRED, loan, user_id,
                                 {"from_agent": previous_agent, "to_agent": agent.id})
        return [loan for loan, _ in transferred]

    @contextmanager
    def lock_loans(self, loan_ids: Iterable[str]):
        """Hold the locks of several loans, acquired in id order"""
        with ExitStack() as stack:
            for loan_id in sorted(set(loan_ids)):
                stack.enter_context(self.storage.lock(self.loans_table, loan_id))
            yield

    def lock_agent_loans(self, agent_id: str):
        return self.lock_loans(loan.id for loan in self.get_agent_loans(agent_id))

    def update_agent_branch(self, agent_id: str, branch: str, branch_id: str) -> int:
        """Move every loan of an agent to a new branch; returns the number moved"""
        moved = 0
        for loan in self.get_agent_loans(agent_id):
            with self.storage.lock(self.loans_table, loan.id):
                current = self.require_loan(loan.id)
                current.branch = branch
                current.branch_id = branch_id
                self._save_loan(current)
                moved += 1
        return moved

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return self._loan_from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return loan

    def list_loans(self) -> List[Loan]:
        loans = [self._loan_from_dict(data) for data in self.storage.load_all(self.loans_table)]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def get_agent_loans(self, agent_id: str) -> List[Loan]:
        loans = [self._loan_from_dict(data)
                 for data in self.storage.find(self.loans_table, {'agent_id': agent_id})]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def get_loans_by_status(self, status: LoanStatus) -> List[Loan]:
        loans = [self._loan_from_dict(data)
                 for data in self.storage.find(self.loans_table, {'status': status.value})]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def get_customer_loans(self, bvn: str) -> List[Loan]:
        """Loans whose customer carries the given BVN, newest first"""
        bvn = (bvn or "").strip()
        if not bvn:
            raise ValidationError("Customer BVN is required")
        return [loan for loan in self.list_loans()
                if str(loan.customer_details.get('bvn', '')).strip() == bvn]

    def get_active_loans(self, agent_id: Optional[str] = None) -> List[Loan]:
        loans = self.get_agent_loans(agent_id) if agent_id else self.list_loans()
        return [loan for loan in loans if loan.is_active and loan.disbursed_at is not None]

    def payments_on(self, agent_id: str, day: Any) -> Decimal:
        """Total of ledger payments dated ``day`` across the agent's loans"""
        target = normalize_date(day)
        if target is None:
            raise ValidationError("A valid date is required")
        return total(
            payment.amount
            for loan in self.get_agent_loans(agent_id)
            for payment in loan.payment_ledger
            if payment.payment_date == target
        )

    def disbursement_fees_on(self, agent_id: str, day: Any) -> Decimal:
        """Application fees of the agent's loans disbursed on ``day``"""
        target = normalize_date(day)
        if target is None:
            raise ValidationError("A valid date is required")
        return total(
            loan.application_fee
            for loan in self.get_agent_loans(agent_id)
            if loan.disbursed_at is not None and normalize_date(loan.disbursed_at) == target
        )

    def assess(self, loan_id: str, as_of: Optional[Any] = None) -> DelinquencyAssessment:
        return self.classifier.classify(self.require_loan(loan_id), as_of)

    def outstanding_loans(self, agent_id: str,
                          as_of: Optional[Any] = None) -> List[Tuple[Loan, DelinquencyAssessment]]:
        """Active loans of an agent with a positive outstanding due"""
        result = []
        for loan in self.get_active_loans(agent_id):
            assessment = self.classifier.classify(loan, as_of)
            if assessment.outstanding_due > ZERO:
                result.append((loan, assessment))
        return result

    def get_outstanding(self, agent_id: str, as_of: Optional[Any] = None) -> Decimal:
        """Sum of outstanding dues across the agent's active loans"""
        self.agent_manager.require_agent(agent_id)
        return self.classifier.total_outstanding(self.get_active_loans(agent_id), as_of)

    # Helpers

    def _check_defaulting_limit(self, agent_id: str) -> None:
        targets = self.agent_manager.get_targets(agent_id)
        if targets.defaulting_target <= ZERO:
            return
        outstanding = self.classifier.total_outstanding(self.get_active_loans(agent_id), today_utc())
        if outstanding > targets.defaulting_target:
            log_action(logger, "warning", f"Loan submission blocked for agent {agent_id}",
                       action="admission_control", resource=f"agent:{agent_id}",
                       extra={"limit": str(targets.defaulting_target), "outstanding": str(outstanding)})
            raise DefaultingLimitExceededError(targets.defaulting_target, outstanding)

    @staticmethod
    def _validate_sections(payload: Dict[str, Any]) -> None:
        missing = [name for name in REQUIRED_SECTIONS
                   if not isinstance(payload.get(name), dict) or not payload.get(name)]
        if missing:
            raise ValidationError("Missing required loan sections", {"missing": missing})

    @staticmethod
    def _validate_amount_requested(value: Any) -> Decimal:
        amount = to_amount(value)
        if amount is None or amount <= ZERO:
            raise ValidationError("Loan amount and type are required",
                                  {"amount_requested": str(value)})
        return amount

    @staticmethod
    def _require_reason(reason: Any, message: str) -> str:
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError(message)
        return reason.strip()

    @staticmethod
    def _require_status(loan: Loan, allowed: Tuple[LoanStatus, ...], action: str) -> None:
        if loan.status not in allowed:
            raise StateConflictError(
                f"Cannot {action} a loan that is {loan.status.value}",
                {"loan_id": loan.id, "status": loan.status.value,
                 "allowed": [s.value for s in allowed]}
            )

    def _log_transition(self, event_type: AuditEventType, loan: Loan,
                        user_id: Optional[str], metadata: Dict[str, Any]) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"status": loan.status.value, **metadata},
            user_id=user_id
        )
        log_action(logger, "info", f"Loan {loan.id} {event_type.value.replace('loan_', '')}",
                   user_id=user_id, action=event_type.value, resource=f"loan:{loan.id}",
                   extra={"status": loan.status.value})

    def _save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, self.loan_to_dict(loan))

    def loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        result = {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'agent_id': loan.agent_id,
            'agent_name': loan.agent_name,
            'branch': loan.branch,
            'branch_id': loan.branch_id,
            'agent_signature': loan.agent_signature,
            'loan_type': loan.loan_type.value,
            'status': loan.status.value,
            'customer_details': loan.customer_details,
            'business_details': loan.business_details,
            'bank_details': loan.bank_details,
            'guarantor_details': loan.guarantor_details,
            'group_details': loan.group_details,
            'pictures': loan.pictures,
            'guarantor_form_pic': loan.guarantor_form_pic,
            'call_checks': loan.call_checks.to_dict(),
            'repayment_schedule': schedule_to_dicts(loan.repayment_schedule),
            'payment_ledger': [p.to_dict() for p in loan.payment_ledger],
            'rejection_reason': loan.rejection_reason,
            'edited_reason': loan.edited_reason,
            'disbursed_at': loan.disbursed_at.isoformat() if loan.disbursed_at else None,
            'disbursement_picture': loan.disbursement_picture
        }
        for name in MONEY_FIELDS:
            result[name] = str(getattr(loan, name))
        return result

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        checks = data.get('call_checks') or {}
        disbursed_at = data.get('disbursed_at')

        loan = Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            agent_id=data['agent_id'],
            agent_name=data.get('agent_name', ""),
            branch=data.get('branch', ""),
            branch_id=data.get('branch_id', ""),
            agent_signature=data.get('agent_signature'),
            loan_type=parse_loan_type(data.get('loan_type', 'daily')),
            status=LoanStatus(data['status']),
            amount_requested=amount_or_zero(data.get('amount_requested')),
            customer_details=data.get('customer_details') or {},
            business_details=data.get('business_details') or {},
            bank_details=data.get('bank_details') or {},
            guarantor_details=data.get('guarantor_details') or {},
            group_details=data.get('group_details') or {},
            pictures=data.get('pictures') or {},
            guarantor_form_pic=data.get('guarantor_form_pic'),
            call_checks=CallChecks(**{flag: bool(checks.get(flag, False)) for flag in CALL_CHECK_FLAGS}),
            repayment_schedule=schedule_from_dicts(data.get('repayment_schedule')),
            # Malformed or duplicated ledger entries are dropped on read
            payment_ledger=sanitize_ledger(data.get('payment_ledger')),
            rejection_reason=data.get('rejection_reason'),
            edited_reason=data.get('edited_reason'),
            disbursed_at=datetime.fromisoformat(disbursed_at) if disbursed_at else None,
            disbursement_picture=data.get('disbursement_picture')
        )
        for name in MONEY_FIELDS[1:]:
            setattr(loan, name, amount_or_zero(data.get(name)))
        return loan
