"""
Collection Service

``FieldLendingSystem`` builds every component once and wires the
back-references between them. ``CollectionService`` is the boundary the
request handlers call: each operation returns an ``OperationResult`` and no
core exception crosses it.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .config import FieldbookConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .business_calendar import BusinessCalendar, Holiday, HolidayStore
from .schedule import ScheduleGenerator
from .allocation import PaymentAllocator
from .delinquency import DelinquencyClassifier
from .agents import AgentManager
from .loans import Loan, LoanManager
from .remittance import RemittanceEntry, RemittanceLedger
from .branches import BranchManager
from .rates import RateProvider, HttpRateProvider, StoredRateProvider
from .aggregation import AggregationSummary, DelinquencyAggregationJob, DelinquencyJobScheduler
from .auth import TokenAuthenticator
from .exceptions import FieldLendingError
from .results import OperationResult
from .logging_config import get_logger


logger = get_logger("fieldbook.service")


class FieldLendingSystem:
    """Loan collection core with all components initialized"""

    def __init__(self, config: Optional[FieldbookConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        cfg = self.config

        self.storage = storage if storage is not None else create_storage(cfg.database_url)
        self.audit_trail = AuditTrail(self.storage)

        self.holiday_store = HolidayStore(self.storage, self.audit_trail)
        self.calendar = BusinessCalendar(self.holiday_store)
        self.schedule_generator = ScheduleGenerator(
            self.calendar,
            daily_schedule_length=cfg.daily_schedule_length,
            weekly_installment_count=cfg.weekly_installment_count
        )
        self.allocator = PaymentAllocator(self.calendar)
        self.classifier = DelinquencyClassifier(
            self.calendar,
            daily_installment_count=cfg.daily_installment_count,
            weekly_installment_count=cfg.weekly_installment_count,
            overdue_days=cfg.delinquency_overdue_days,
            recovery_days=cfg.delinquency_recovery_days,
            min_outstanding_threshold=Decimal(cfg.min_outstanding_threshold)
        )

        self.agent_manager = AgentManager(self.storage, self.audit_trail)
        self.rate_provider = self._create_rate_provider()
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.calendar, self.schedule_generator,
            self.allocator, self.classifier, self.agent_manager, self.rate_provider,
            application_fee=Decimal(cfg.application_fee)
        )
        self.remittance_ledger = RemittanceLedger(
            self.storage, self.audit_trail, self.agent_manager, self.loan_manager,
            tolerance=Decimal(cfg.remittance_tolerance)
        )
        self.branch_manager = BranchManager(self.storage, self.audit_trail, self.agent_manager)

        self.agent_manager.loan_manager = self.loan_manager
        self.loan_manager.remittance_ledger = self.remittance_ledger

        self.delinquency_job = DelinquencyAggregationJob(
            self.loan_manager, self.agent_manager, self.classifier, self.audit_trail)
        self.job_scheduler = DelinquencyJobScheduler(
            self.delinquency_job,
            run_time=cfg.delinquency_job_time,
            include_inactive=cfg.delinquency_job_include_inactive
        )

        self.authenticator = TokenAuthenticator(
            cfg.jwt_secret, algorithm=cfg.jwt_algorithm, expiry_hours=cfg.jwt_expiry_hours)

    def _create_rate_provider(self) -> RateProvider:
        """Remote rate service when configured, otherwise the admin-set rate"""
        default_rate = Decimal(self.config.default_interest_rate)
        if self.config.rate_provider_url:
            return HttpRateProvider(
                base_url=self.config.rate_provider_url,
                timeout=self.config.rate_provider_timeout,
                fallback_rate=default_rate
            )
        return StoredRateProvider(self.storage, self.audit_trail, default_rate=default_rate)

    def close(self) -> None:
        self.job_scheduler.stop()
        if isinstance(self.rate_provider, HttpRateProvider):
            self.rate_provider.close()
        self.storage.close()


class CollectionService:
    """Result-typed operations over a FieldLendingSystem"""

    def __init__(self, system: FieldLendingSystem):
        self.system = system

    def _call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> OperationResult:
        try:
            return OperationResult.success(func(*args, **kwargs))
        except FieldLendingError as e:
            logger.info(f"{operation} failed: {e.code}: {e.message}")
            return OperationResult.failure(e)

    # Loan lifecycle

    def submit_loan(self, agent_id: str, payload: Dict[str, Any],
                    user_id: Optional[str] = None) -> OperationResult[Loan]:
        return self._call("submit_loan", self.system.loan_manager.submit_loan,
                          agent_id, payload, user_id=user_id)

    def update_call_checks(self, loan_id: str, user_id: Optional[str] = None,
                           **flags: bool) -> OperationResult[Loan]:
        return self._call("update_call_checks", self.system.loan_manager.update_call_checks,
                          loan_id, user_id=user_id, **flags)

    def request_edit(self, loan_id: str, reason: str,
                     user_id: Optional[str] = None) -> OperationResult[Loan]:
        return self._call("request_edit", self.system.loan_manager.request_edit,
                          loan_id, reason, user_id=user_id)

    def resubmit_loan(self, loan_id: str, updates: Optional[Dict[str, Any]] = None,
                      user_id: Optional[str] = None) -> OperationResult[Loan]:
        return self._call("resubmit_loan", self.system.loan_manager.resubmit_loan,
                          loan_id, updates, user_id=user_id)

    def approve_loan(self, loan_id: str, amount_approved: Any,
                     user_id: Optional[str] = None) -> OperationResult[Loan]:
        return self._call("approve_loan", self.system.loan_manager.approve_loan,
                          loan_id, amount_approved, user_id=user_id)

    def disburse_loan(self, loan_id: str, disbursement_picture: Optional[str] = None,
                      disbursed_at: Optional[Any] = None,
                      user_id: Optional[str] = None) -> OperationResult[Loan]:
        return self._call("disburse_loan", self.system.loan_manager.disburse_loan,
                          loan_id, disbursement_picture=disbursement_picture,
                          disbursed_at=disbursed_at, user_id=user_id)

    def reject_loan(self, loan_id: str, reason: str,
                    user_id: Optional[str] = None) -> OperationResult[Loan]:
        return self._call("reject_loan", self.system.loan_manager.reject_loan,
                          loan_id, reason, user_id=user_id)

    def record_payment(self, loan_id: str, amount: Any, payment_date: Optional[Any] = None,
                       payment_id: Optional[str] = None,
                       user_id: Optional[str] = None) -> OperationResult[Loan]:
        return self._call("record_payment", self.system.loan_manager.record_payment,
                          loan_id, amount, payment_date=payment_date,
                          payment_id=payment_id, user_id=user_id)

    def sync_repayment_schedule(self, loan_id: str,
                                user_id: Optional[str] = None) -> OperationResult[Loan]:
        return self._call("sync_repayment_schedule", self.system.loan_manager.sync_repayment_schedule,
                          loan_id, user_id=user_id)

    def transfer_loans(self, loan_ids: List[str], agent_id: str,
                       user_id: Optional[str] = None) -> OperationResult[List[Loan]]:
        return self._call("transfer_loans", self.system.loan_manager.transfer_loans,
                          loan_ids, agent_id, user_id=user_id)

    # Agents and delinquency

    def get_outstanding(self, agent_id: str, as_of: Optional[Any] = None) -> OperationResult[Decimal]:
        return self._call("get_outstanding", self.system.loan_manager.get_outstanding,
                          agent_id, as_of)

    def run_delinquency_aggregation(self, as_of: Optional[Any] = None,
                                    include_inactive: bool = False) -> OperationResult[AggregationSummary]:
        return self._call("run_delinquency_aggregation", self.system.delinquency_job.run,
                          as_of=as_of, include_inactive=include_inactive)

    # Remittance

    def submit_remittance(self, agent_id: str, entry_date: Any, amount_paid: Any,
                          amount_collected: Optional[Any] = None, image: Optional[str] = None,
                          remark: Optional[str] = None,
                          user_id: Optional[str] = None) -> OperationResult[RemittanceEntry]:
        return self._call("submit_remittance", self.system.remittance_ledger.submit_remittance,
                          agent_id, entry_date, amount_paid, amount_collected=amount_collected,
                          image=image, remark=remark, user_id=user_id)

    def resolve_remittance(self, agent_id: str, entry_date: Any, resolution: str,
                           user_id: Optional[str] = None) -> OperationResult[RemittanceEntry]:
        return self._call("resolve_remittance", self.system.remittance_ledger.resolve_remittance,
                          agent_id, entry_date, resolution, user_id=user_id)

    # Calendar

    def add_holiday(self, holiday_date: Any, reason: str = "", is_recurring: bool = False,
                    user_id: Optional[str] = None) -> OperationResult[Holiday]:
        return self._call("add_holiday", self.system.holiday_store.add_holiday,
                          holiday_date, reason=reason, is_recurring=is_recurring, user_id=user_id)
