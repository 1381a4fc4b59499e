"""
Test suite for the loan lifecycle

Covers submission, verification calls, edits, approval math, disbursement,
repayment recording, schedule resynchronization and reassignment.
"""

import threading

import pytest
from datetime import date, timedelta
from decimal import Decimal

from field_lending.config import FieldbookConfig
from field_lending.storage import InMemoryStorage
from field_lending.service import FieldLendingSystem
from field_lending.audit import AuditEventType
from field_lending.business_calendar import today_utc
from field_lending.loans import LoanStatus, CALL_CHECK_FLAGS
from field_lending.schedule import InstallmentStatus
from field_lending.exceptions import (
    ValidationError, NotFoundError, StateConflictError, BusinessRuleError,
    PaymentExceedsBalanceError, DefaultingLimitExceededError,
    NonBusinessDayError, RemittanceAlreadyFiledError
)


def loan_payload(**overrides):
    payload = {
        "loan_type": "daily",
        "amount_requested": "10000",
        "customer_details": {"name": "Ada Obi", "bvn": "22200011122"},
        "business_details": {"name": "Ada Provisions", "address": "12 Market Road"},
        "bank_details": {"bank": "First Bank", "account_number": "0123456789"},
        "guarantor_details": {"name": "Chidi Obi", "phone": "08030000000"},
    }
    payload.update(overrides)
    return payload


class LoanTestCase:
    """Shared setup: one system with two agents"""

    def setup_method(self):
        config = FieldbookConfig(rate_provider_url="", auth_enabled=False)
        self.system = FieldLendingSystem(config=config, storage=InMemoryStorage())
        self.loans = self.system.loan_manager
        self.agents = self.system.agent_manager

        self.agent = self.agents.create_agent(
            "Bola", "Ade", "bola@example.com", "08011111111", "Ikeja", "BR-1", agent_id="agent-1")
        self.other_agent = self.agents.create_agent(
            "Tunde", "Okafor", "tunde@example.com", "08022222222", "Yaba", "BR-2", agent_id="agent-2")

    def submit(self, **overrides):
        return self.loans.submit_loan(self.agent.id, loan_payload(**overrides))

    def verify_all_calls(self, loan_id):
        return self.loans.update_call_checks(loan_id, **{flag: True for flag in CALL_CHECK_FLAGS})

    def approved_loan(self, amount="10000"):
        loan = self.submit()
        self.verify_all_calls(loan.id)
        return self.loans.approve_loan(loan.id, amount)

    def active_loan(self, disbursed_at="2024-01-02"):
        loan = self.approved_loan()
        return self.loans.disburse_loan(loan.id, disbursement_picture="pic.jpg", disbursed_at=disbursed_at)


class TestLoanSubmission(LoanTestCase):

    def test_submit_loan(self):
        loan = self.submit(loan_id="LN-CLIENT-1")

        assert loan.id == "LN-CLIENT-1"
        assert loan.status == LoanStatus.WAITING_FOR_APPROVAL
        assert loan.agent_name == "Bola Ade"
        assert loan.branch_id == "BR-1"
        assert loan.amount_requested == Decimal('10000.00')
        assert loan.application_fee == Decimal('2000.00')
        assert self.loans.get_loan(loan.id).customer_details["bvn"] == "22200011122"

    def test_generated_loan_id(self):
        loan = self.submit()
        assert loan.id.startswith("LN-")
        assert len(loan.id.split("-")[2]) == 4

    def test_missing_sections(self):
        with pytest.raises(ValidationError) as exc:
            self.submit(bank_details={})
        assert exc.value.details["missing"] == ["bank_details"]

    def test_invalid_amount_and_type(self):
        with pytest.raises(ValidationError):
            self.submit(amount_requested="0")
        with pytest.raises(ValidationError):
            self.submit(amount_requested="lots")
        with pytest.raises(ValidationError):
            self.submit(loan_type="monthly")

    def test_unknown_agent(self):
        with pytest.raises(NotFoundError):
            self.loans.submit_loan("ghost", loan_payload())

    def test_inactive_agent(self):
        self.agents.set_active(self.agent.id, False)
        with pytest.raises(StateConflictError):
            self.submit()

    def test_duplicate_loan_id(self):
        self.submit(loan_id="LN-DUP")
        with pytest.raises(StateConflictError):
            self.submit(loan_id="LN-DUP")

    def test_defaulting_limit_blocks_submission(self):
        # Disbursed long ago with nothing paid: the whole balance is outstanding
        self.active_loan(disbursed_at="2024-01-02")
        self.agents.set_defaulting_target(100, agent_id=self.agent.id)

        with pytest.raises(DefaultingLimitExceededError) as exc:
            self.submit()
        assert exc.value.limit == Decimal('100')
        assert exc.value.outstanding == Decimal('11000.00')

    def test_zero_defaulting_target_disables_check(self):
        self.active_loan(disbursed_at="2024-01-02")
        assert self.submit().status == LoanStatus.WAITING_FOR_APPROVAL


class TestEditFlow(LoanTestCase):

    def test_request_edit_and_resubmit(self):
        loan = self.submit()
        edited = self.loans.request_edit(loan.id, "Guarantor phone is wrong")
        assert edited.status == LoanStatus.EDITED
        assert edited.edited_reason == "Guarantor phone is wrong"

        resubmitted = self.loans.resubmit_loan(loan.id, {
            "guarantor_details": {"name": "Chidi Obi", "phone": "08039999999"},
            "amount_requested": "8000"
        })
        assert resubmitted.status == LoanStatus.WAITING_FOR_APPROVAL
        assert resubmitted.guarantor_details["phone"] == "08039999999"
        assert resubmitted.amount_requested == Decimal('8000.00')

    def test_request_edit_requires_reason(self):
        loan = self.submit()
        with pytest.raises(ValidationError):
            self.loans.request_edit(loan.id, "  ")

    def test_resubmit_requires_edited_status(self):
        loan = self.submit()
        with pytest.raises(StateConflictError):
            self.loans.resubmit_loan(loan.id, {})

    def test_resubmit_rejects_unknown_fields(self):
        loan = self.submit()
        self.loans.request_edit(loan.id, "Fix it")
        with pytest.raises(ValidationError):
            self.loans.resubmit_loan(loan.id, {"status": "active"})

    def test_call_checks_only_before_approval(self):
        loan = self.approved_loan()
        with pytest.raises(StateConflictError):
            self.loans.update_call_checks(loan.id, call_cso=False)

    def test_unknown_call_check(self):
        loan = self.submit()
        with pytest.raises(ValidationError):
            self.loans.update_call_checks(loan.id, call_mother=True)


class TestApproval(LoanTestCase):

    def test_approval_math(self):
        loan = self.approved_loan("10000")

        assert loan.status == LoanStatus.APPROVED
        assert loan.interest_rate == Decimal('0.10')
        assert loan.interest == Decimal('1000.00')
        assert loan.amount_to_be_paid == Decimal('11000.00')
        assert loan.daily_amount == Decimal('500.00')

    def test_weekly_approval_divides_by_five(self):
        loan = self.submit(loan_type="weekly")
        self.verify_all_calls(loan.id)
        loan = self.loans.approve_loan(loan.id, "5000")
        assert loan.daily_amount == Decimal('1100.00')

    def test_approval_uses_stored_rate(self):
        self.system.rate_provider.set_rate("0.15", "Q2 pricing")
        loan = self.approved_loan("10000")
        assert loan.interest == Decimal('1500.00')
        assert loan.amount_to_be_paid == Decimal('11500.00')

    def test_approval_requires_call_checks(self):
        loan = self.submit()
        self.loans.update_call_checks(loan.id, call_cso=True, call_customer=True)

        with pytest.raises(BusinessRuleError) as exc:
            self.loans.approve_loan(loan.id, "10000")
        assert exc.value.details["missing_call_checks"] == ["call_guarantor", "call_group_leader"]

    def test_double_approval(self):
        loan = self.approved_loan()
        with pytest.raises(StateConflictError, match="already approved"):
            self.loans.approve_loan(loan.id, "10000")

    def test_invalid_approved_amount(self):
        loan = self.submit()
        self.verify_all_calls(loan.id)
        with pytest.raises(ValidationError):
            self.loans.approve_loan(loan.id, "-5")

    def test_reject(self):
        loan = self.submit()
        rejected = self.loans.reject_loan(loan.id, "Incomplete documents")
        assert rejected.status == LoanStatus.REJECTED
        assert rejected.rejection_reason == "Incomplete documents"

    def test_cannot_reject_approved_loan(self):
        loan = self.approved_loan()
        with pytest.raises(StateConflictError):
            self.loans.reject_loan(loan.id, "Too late")


class TestDisbursement(LoanTestCase):

    def test_disburse_generates_schedule(self):
        loan = self.active_loan("2024-01-02")

        assert loan.status == LoanStatus.ACTIVE
        assert loan.amount_disbursed == Decimal('10000.00')
        assert loan.disbursed_at.date() == date(2024, 1, 2)
        assert loan.disbursement_picture == "pic.jpg"
        assert len(loan.repayment_schedule) == 23
        assert loan.repayment_schedule[0].status == InstallmentStatus.APPROVED
        assert all(e.due_date.weekday() < 5 for e in loan.repayment_schedule)

    def test_disburse_waiting_loan_leaves_it_unmodified(self):
        loan = self.submit()
        before = self.system.storage.load(self.loans.loans_table, loan.id)

        with pytest.raises(StateConflictError):
            self.loans.disburse_loan(loan.id, disbursed_at="2024-01-02")

        assert self.system.storage.load(self.loans.loans_table, loan.id) == before

    def test_disburse_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.loans.disburse_loan("LN-missing")

    def test_disburse_skips_holidays(self):
        self.system.holiday_store.add_holiday("2024-01-03", reason="Closure")
        loan = self.active_loan("2024-01-02")
        assert date(2024, 1, 3) not in [e.due_date for e in loan.repayment_schedule]


class TestRepayment(LoanTestCase):

    def setup_method(self):
        super().setup_method()
        self.loan = self.active_loan("2024-01-02")

    def test_record_payment_rolls_forward(self):
        loan = self.loans.record_payment(self.loan.id, "1200", payment_date="2024-01-02", payment_id="p1")

        assert loan.amount_paid_so_far == Decimal('1200.00')
        assert [e.amount_paid for e in loan.repayment_schedule[:4]] == [
            Decimal('500.00'), Decimal('500.00'), Decimal('200.00'), Decimal('0.00')]
        assert loan.repayment_schedule[2].status == InstallmentStatus.PARTIAL
        assert len(loan.payment_ledger) == 1
        assert self.system.audit_trail.get_events_by_type(AuditEventType.LOAN_PAYMENT_RECORDED)

    def test_duplicate_payment_id_is_noop(self):
        self.loans.record_payment(self.loan.id, "500", payment_date="2024-02-01", payment_id="client-1")
        loan = self.loans.record_payment(self.loan.id, "500", payment_date="2024-02-01", payment_id="client-1")

        assert loan.amount_paid_so_far == Decimal('500.00')
        assert len(loan.payment_ledger) == 1

    def test_weekend_payment_rejected(self):
        with pytest.raises(NonBusinessDayError):
            self.loans.record_payment(self.loan.id, "500", payment_date="2024-01-06")

    def test_holiday_payment_rejected(self):
        self.system.holiday_store.add_holiday("2024-01-10", reason="Closure")
        with pytest.raises(NonBusinessDayError):
            self.loans.record_payment(self.loan.id, "500", payment_date="2024-01-10")

    def test_payment_exceeds_balance(self):
        with pytest.raises(PaymentExceedsBalanceError) as exc:
            self.loans.record_payment(self.loan.id, "11000.01", payment_date="2024-01-03")
        assert exc.value.remaining == Decimal('11000.00')

    def test_invalid_payment_amount(self):
        with pytest.raises(ValidationError):
            self.loans.record_payment(self.loan.id, "0", payment_date="2024-01-03")

    def test_full_repayment(self):
        loan = self.loans.record_payment(self.loan.id, "11000", payment_date="2024-01-03")
        assert loan.status == LoanStatus.FULLY_PAID
        assert loan.remaining_balance == Decimal('0.00')
        assert self.system.audit_trail.get_events_by_type(AuditEventType.LOAN_FULLY_PAID)

        with pytest.raises(StateConflictError):
            self.loans.record_payment(self.loan.id, "1", payment_date="2024-01-04")

    def test_payment_on_waiting_loan(self):
        loan = self.submit()
        with pytest.raises(StateConflictError):
            self.loans.record_payment(loan.id, "100", payment_date="2024-01-03")

    def test_remittance_closes_the_day(self):
        self.system.remittance_ledger.submit_remittance(
            self.agent.id, "2024-01-03", amount_paid="500", amount_collected="500")

        with pytest.raises(RemittanceAlreadyFiledError):
            self.loans.record_payment(self.loan.id, "500", payment_date="2024-01-03")
        # Other days stay open
        self.loans.record_payment(self.loan.id, "500", payment_date="2024-01-04")

    def test_capacity_invariant_over_many_payments(self):
        for i, day in enumerate(["2024-01-02", "2024-01-03", "2024-01-05", "2024-01-09"]):
            loan = self.loans.record_payment(self.loan.id, "333.33", payment_date=day, payment_id=f"p{i}")
            assert sum(e.amount_paid for e in loan.repayment_schedule) == loan.amount_paid_so_far
        assert loan.amount_paid_so_far == Decimal('1333.32')

    def test_payment_before_disbursement_rejected(self):
        with pytest.raises(ValidationError, match="before the loan was disbursed"):
            self.loans.record_payment(self.loan.id, "500", payment_date="2023-12-29")

        loan = self.loans.get_loan(self.loan.id)
        assert loan.payment_ledger == []
        assert loan.repayment_schedule[0].due_date == date(2024, 1, 2)
        assert loan.repayment_schedule[0].status == InstallmentStatus.APPROVED
        assert len(loan.repayment_schedule) == 23

    def test_future_payment_rejected(self):
        future = today_utc() + timedelta(days=30)
        with pytest.raises(ValidationError, match="future"):
            self.loans.record_payment(self.loan.id, "500", payment_date=future.isoformat())
        assert self.loans.get_loan(self.loan.id).amount_paid_so_far == Decimal('0.00')

    def test_payment_waits_for_remittance_on_the_same_day(self):
        errors = []

        def pay():
            try:
                self.loans.record_payment(self.loan.id, "500", payment_date="2024-01-03")
            except RemittanceAlreadyFiledError as exc:
                errors.append(exc)

        with self.system.remittance_ledger.lock_day(self.agent.id, date(2024, 1, 3)):
            worker = threading.Thread(target=pay)
            worker.start()
            worker.join(0.2)
            assert worker.is_alive()
            self.system.remittance_ledger.submit_remittance(
                self.agent.id, "2024-01-03", amount_paid="500", amount_collected="500")

        worker.join(5)
        assert len(errors) == 1
        assert self.loans.get_loan(self.loan.id).payment_ledger == []


class TestScheduleSync(LoanTestCase):

    def setup_method(self):
        super().setup_method()
        self.loan = self.active_loan("2024-01-02")
        self.loans.record_payment(self.loan.id, "700", payment_date="2024-01-02", payment_id="p1")

    def corrupt_ledger(self):
        storage = self.system.storage
        data = storage.load(self.loans.loans_table, self.loan.id)
        data["payment_ledger"] += [
            {"id": "p1", "amount": "700.00", "date": "2024-01-02"},
            {"id": "bad", "amount": "NaN", "date": "2024-01-02"},
            {"amount": "300", "date": "2024-01-04"},
        ]
        data["amount_paid_so_far"] = "99999.00"
        storage.save(self.loans.loans_table, self.loan.id, data)

    def test_sync_repairs_ledger(self):
        self.corrupt_ledger()
        loan = self.loans.sync_repayment_schedule(self.loan.id)

        assert loan.amount_paid_so_far == Decimal('1000.00')
        assert len(loan.payment_ledger) == 2
        assert sum(e.amount_paid for e in loan.repayment_schedule) == Decimal('1000.00')

        stored = self.system.storage.load(self.loans.loans_table, self.loan.id)
        assert len(stored["payment_ledger"]) == 2
        assert Decimal(stored["amount_paid_so_far"]) == Decimal('1000.00')

    def test_sync_is_repeatable(self):
        self.corrupt_ledger()
        first = self.loans.sync_repayment_schedule(self.loan.id)
        second = self.loans.sync_repayment_schedule(self.loan.id)

        assert self.loans.loan_to_dict(first)["repayment_schedule"] == \
            self.loans.loan_to_dict(second)["repayment_schedule"]
        assert first.amount_paid_so_far == second.amount_paid_so_far

    def test_sync_applies_new_holiday(self):
        self.system.holiday_store.add_holiday("2024-01-03", reason="Closure")
        loan = self.loans.sync_repayment_schedule(self.loan.id)

        by_date = {e.due_date: e for e in loan.repayment_schedule}
        assert by_date[date(2024, 1, 3)].status == InstallmentStatus.HOLIDAY
        assert by_date[date(2024, 1, 3)].amount_paid == Decimal('0.00')
        assert loan.amount_paid_so_far == Decimal('700.00')

    def test_sync_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.loans.sync_repayment_schedule("LN-missing")

    def test_sync_requires_a_disbursed_loan(self):
        approved = self.approved_loan()
        with pytest.raises(StateConflictError):
            self.loans.sync_repayment_schedule(approved.id)
        assert self.loans.get_loan(approved.id).repayment_schedule == []


class TestQueriesAndTransfer(LoanTestCase):

    def test_transfer_loans(self):
        first = self.submit()
        second = self.submit()

        moved = self.loans.transfer_loans([first.id, second.id], self.other_agent.id)

        assert {loan.id for loan in moved} == {first.id, second.id}
        for loan_id in (first.id, second.id):
            loan = self.loans.get_loan(loan_id)
            assert loan.agent_id == "agent-2"
            assert loan.agent_name == "Tunde Okafor"
            assert loan.branch_id == "BR-2"
        assert self.loans.get_agent_loans(self.agent.id) == []

    def test_transfer_unknown_loan(self):
        loan = self.submit()
        with pytest.raises(NotFoundError):
            self.loans.transfer_loans([loan.id, "LN-missing"], self.other_agent.id)
        assert self.loans.get_loan(loan.id).agent_id == self.agent.id

    def test_get_outstanding(self):
        loan = self.active_loan("2024-01-02")
        self.loans.record_payment(loan.id, "1000", payment_date="2024-01-03")

        # Six business days elapsed by 2024-01-10 at 500 each
        assert self.loans.get_outstanding(self.agent.id, "2024-01-10") == Decimal('2000.00')
        assert self.loans.get_outstanding(self.other_agent.id, "2024-01-10") == Decimal('0.00')

    def test_get_outstanding_unknown_agent(self):
        with pytest.raises(NotFoundError):
            self.loans.get_outstanding("ghost")

    def test_payments_and_fees_on_a_day(self):
        loan = self.active_loan("2024-01-02")
        self.loans.record_payment(loan.id, "400", payment_date="2024-01-03", payment_id="a")
        self.loans.record_payment(loan.id, "250", payment_date="2024-01-03", payment_id="b")

        assert self.loans.payments_on(self.agent.id, "2024-01-03") == Decimal('650.00')
        assert self.loans.disbursement_fees_on(self.agent.id, "2024-01-02") == Decimal('2000.00')
        assert self.loans.disbursement_fees_on(self.agent.id, "2024-01-03") == Decimal('0.00')

    def test_loans_by_status_and_customer(self):
        waiting = self.submit()
        rejected = self.submit(customer_details={"name": "Other", "bvn": "999"})
        self.loans.reject_loan(rejected.id, "No")

        assert [l.id for l in self.loans.get_loans_by_status(LoanStatus.WAITING_FOR_APPROVAL)] == [waiting.id]
        assert [l.id for l in self.loans.get_customer_loans("999")] == [rejected.id]
        with pytest.raises(ValidationError):
            self.loans.get_customer_loans("")
