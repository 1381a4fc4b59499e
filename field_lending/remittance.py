"""
Remittance Ledger Module

One document per agent per business day recording the cash an agent was
expected to hand in, what was actually remitted (possibly in several partial
submissions), what reached the teller, and the administrator's resolution.
Once an agent has filed a remittance for a day, no further repayments can be
recorded against that day.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .agents import AgentManager
from .business_calendar import normalize_date, today_utc
from .exceptions import ValidationError, NotFoundError, RemittanceExceedsExpectedError
from .money import ZERO, add, subtract, to_amount, amount_or_zero
from .logging_config import get_logger, log_action


logger = get_logger("fieldbook.remittance")


class ReconciliationStatus(Enum):
    BALANCED = "balanced"
    ISSUE = "issue"
    RESOLVED = "resolved"


@dataclass
class PartialSubmission:
    amount: Decimal
    submitted_at: datetime
    image: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount),
            'image': self.image,
            'submitted_at': self.submitted_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PartialSubmission':
        return cls(
            amount=amount_or_zero(data.get('amount')),
            image=data.get('image') or "",
            submitted_at=datetime.fromisoformat(data['submitted_at'])
        )


@dataclass
class RemittanceEntry:
    """An agent's remittance for one day"""
    agent_id: str
    entry_date: date
    amount_collected: Decimal          # Expected collection
    amount_paid: Decimal = ZERO        # Remitted so far
    amount_on_teller: Optional[Decimal] = None
    image: str = ""
    remark: str = ""
    issue_resolution: str = ""
    resolved_issue: str = ""
    partial_submissions: List[PartialSubmission] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return remittance_id(self.agent_id, self.entry_date)

    @property
    def remaining(self) -> Decimal:
        return max(ZERO, subtract(self.amount_collected, self.amount_paid))

    def reconciliation_status(self, tolerance: Decimal = Decimal('0.50')) -> ReconciliationStatus:
        """
        Resolved once an administrator has noted a resolution. Otherwise the
        remitted amount is compared with the teller amount when one has been
        recorded, and with the expected collection when not.
        """
        if self.resolved_issue:
            return ReconciliationStatus.RESOLVED
        reference = self.amount_on_teller if self.amount_on_teller is not None else self.amount_collected
        if abs(subtract(self.amount_paid, reference)) <= tolerance:
            return ReconciliationStatus.BALANCED
        return ReconciliationStatus.ISSUE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'agent_id': self.agent_id,
            'date': self.entry_date.isoformat(),
            'amount_collected': str(self.amount_collected),
            'amount_paid': str(self.amount_paid),
            'amount_on_teller': str(self.amount_on_teller) if self.amount_on_teller is not None else None,
            'image': self.image,
            'remark': self.remark,
            'issue_resolution': self.issue_resolution,
            'resolved_issue': self.resolved_issue,
            'partial_submissions': [p.to_dict() for p in self.partial_submissions],
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RemittanceEntry':
        teller = data.get('amount_on_teller')
        return cls(
            agent_id=data['agent_id'],
            entry_date=date.fromisoformat(data['date']),
            amount_collected=amount_or_zero(data.get('amount_collected')),
            amount_paid=amount_or_zero(data.get('amount_paid')),
            amount_on_teller=to_amount(teller) if teller is not None else None,
            image=data.get('image') or "",
            remark=data.get('remark') or "",
            issue_resolution=data.get('issue_resolution') or "",
            resolved_issue=data.get('resolved_issue') or "",
            partial_submissions=[PartialSubmission.from_dict(p) for p in data.get('partial_submissions', [])],
            created_at=datetime.fromisoformat(data['created_at']) if data.get('created_at') else None,
            updated_at=datetime.fromisoformat(data['updated_at']) if data.get('updated_at') else None
        )


def remittance_id(agent_id: str, day: date) -> str:
    return f"{agent_id}:{day.isoformat()}"


class RemittanceLedger:
    """
    Daily remittances of every agent
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 agent_manager: AgentManager, loan_manager=None,
                 tolerance: Decimal = Decimal('0.50')):
        self.storage = storage
        self.audit = audit_trail
        self.agent_manager = agent_manager
        self.loan_manager = loan_manager
        self.tolerance = tolerance
        self.table_name = "remittances"

    def get_entry(self, agent_id: str, day: Any) -> Optional[RemittanceEntry]:
        target = self._require_date(day)
        data = self.storage.load(self.table_name, remittance_id(agent_id, target))
        if data:
            return RemittanceEntry.from_dict(data)
        return None

    def has_remittance(self, agent_id: str, day: Any) -> bool:
        """True once the agent has filed (or an admin has resolved) a remittance for the day"""
        target = self._require_date(day)
        return self.storage.exists(self.table_name, remittance_id(agent_id, target))

    def lock_day(self, agent_id: str, day: date):
        """Lock on the agent's day; repayments for that day hold it while they write"""
        return self.storage.lock(self.table_name, remittance_id(agent_id, day))

    def get_entries(self, agent_id: Optional[str] = None, start: Optional[Any] = None,
                    end: Optional[Any] = None) -> List[RemittanceEntry]:
        """Entries in [start, end], newest first; all agents when no id is given"""
        start_day = normalize_date(start) if start is not None else None
        end_day = normalize_date(end) if end is not None else None

        rows = (self.storage.find(self.table_name, {'agent_id': agent_id})
                if agent_id else self.storage.load_all(self.table_name))
        entries = [RemittanceEntry.from_dict(row) for row in rows]
        if start_day:
            entries = [e for e in entries if e.entry_date >= start_day]
        if end_day:
            entries = [e for e in entries if e.entry_date <= end_day]
        entries.sort(key=lambda e: e.entry_date, reverse=True)
        return entries

    def summarize(self, entries: List[RemittanceEntry]) -> Dict[str, int]:
        summary = {'total': len(entries), 'balanced': 0, 'issue': 0, 'resolved': 0}
        for entry in entries:
            summary[entry.reconciliation_status(self.tolerance).value] += 1
        return summary

    def submit_remittance(
        self,
        agent_id: str,
        entry_date: Any,
        amount_paid: Any,
        amount_collected: Optional[Any] = None,
        image: Optional[str] = None,
        remark: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> RemittanceEntry:
        """
        File (or add to) an agent's remittance for a day.

        The first submission of a day must state the expected collection and
        may not remit more than it. Later submissions for the same day are
        recorded as partial submissions, and the running total may not
        exceed the expected collection.

        Raises:
            ValidationError: Bad amounts or date
            NotFoundError: Unknown agent
            RemittanceExceedsExpectedError: Total would exceed the expected
                collection; carries the remaining amount
        """
        paid = to_amount(amount_paid)
        if paid is None or paid <= ZERO:
            raise ValidationError("A valid amount_paid greater than 0 is required")
        day = normalize_date(entry_date)
        if day is None:
            raise ValidationError("Invalid date format")
        self.agent_manager.require_agent(agent_id)

        expected_update = to_amount(amount_collected) if amount_collected is not None else None
        doc_id = remittance_id(agent_id, day)
        now = datetime.now(timezone.utc)

        with self.storage.lock(self.table_name, doc_id):
            entry = self.get_entry(agent_id, day)

            if entry is not None:
                if expected_update is not None and expected_update > ZERO:
                    entry.amount_collected = expected_update
                if entry.amount_collected <= ZERO:
                    raise ValidationError("Invalid expected amount in existing record")

                new_total = add(entry.amount_paid, paid)
                if new_total > entry.amount_collected:
                    raise RemittanceExceedsExpectedError(entry.remaining)
                entry.amount_paid = new_total
                partial = True
            else:
                if expected_update is None or expected_update <= ZERO:
                    raise ValidationError("A valid amount_collected is required for a new entry")
                if paid > expected_update:
                    raise RemittanceExceedsExpectedError(expected_update)
                entry = RemittanceEntry(
                    agent_id=agent_id,
                    entry_date=day,
                    amount_collected=expected_update,
                    amount_paid=paid,
                    created_at=now
                )
                partial = False

            if image:
                entry.image = image
            if remark:
                entry.remark = remark
            entry.partial_submissions.append(PartialSubmission(amount=paid, image=image or "", submitted_at=now))
            entry.updated_at = now
            self.storage.save(self.table_name, doc_id, entry.to_dict())

        self.audit.log_event(
            AuditEventType.REMITTANCE_SUBMITTED,
            entity_type="remittance",
            entity_id=doc_id,
            metadata={"amount_paid": paid, "total_paid": entry.amount_paid,
                      "expected": entry.amount_collected, "partial": partial},
            user_id=user_id
        )
        log_action(logger, "info",
                   "Partial remittance recorded" if partial else "Remittance posted",
                   user_id=user_id, action="submit_remittance", resource=f"remittance:{doc_id}",
                   extra={"amount_paid": str(paid), "remaining": str(entry.remaining)})
        return entry

    def record_teller_amount(self, agent_id: str, entry_date: Any, amount_on_teller: Any,
                             issue_resolution: Optional[str] = None,
                             user_id: Optional[str] = None) -> RemittanceEntry:
        """Record what actually reached the teller for a filed remittance"""
        teller = to_amount(amount_on_teller)
        if teller is None or teller < ZERO:
            raise ValidationError("A valid non-negative teller amount is required")
        day = self._require_date(entry_date)
        doc_id = remittance_id(agent_id, day)

        with self.storage.lock(self.table_name, doc_id):
            entry = self.get_entry(agent_id, day)
            if entry is None:
                raise NotFoundError("Remittance record not found", {"id": doc_id})
            entry.amount_on_teller = teller
            if issue_resolution is not None:
                entry.issue_resolution = issue_resolution
            entry.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, doc_id, entry.to_dict())

        self.audit.log_event(
            AuditEventType.REMITTANCE_TELLER_RECORDED,
            entity_type="remittance",
            entity_id=doc_id,
            metadata={"amount_on_teller": teller,
                      "status": entry.reconciliation_status(self.tolerance)},
            user_id=user_id
        )
        return entry

    def resolve_remittance(self, agent_id: str, entry_date: Any, resolution: str,
                           user_id: Optional[str] = None) -> RemittanceEntry:
        """
        Administrator resolution of a day's remittance.

        The expected collection is recomputed from the repayments recorded
        that day plus the application fees of loans disbursed that day. A day
        with no filed remittance gets an entry with nothing remitted.
        """
        if not isinstance(resolution, str) or not resolution.strip():
            raise ValidationError("Date and resolution message are required")
        day = self._require_date(entry_date)
        if day > today_utc():
            raise ValidationError("Cannot resolve remittance for future dates",
                                  {"date": day.isoformat()})
        self.agent_manager.require_agent(agent_id)
        if self.loan_manager is None:
            raise RuntimeError("Remittance ledger is not wired to a loan manager")

        expected = add(self.loan_manager.payments_on(agent_id, day),
                       self.loan_manager.disbursement_fees_on(agent_id, day))
        doc_id = remittance_id(agent_id, day)
        now = datetime.now(timezone.utc)

        with self.storage.lock(self.table_name, doc_id):
            entry = self.get_entry(agent_id, day)
            if entry is None:
                entry = RemittanceEntry(
                    agent_id=agent_id,
                    entry_date=day,
                    amount_collected=expected,
                    remark="Resolved by Admin",
                    created_at=now
                )
            entry.amount_collected = expected
            entry.resolved_issue = resolution.strip()
            entry.updated_at = now
            self.storage.save(self.table_name, doc_id, entry.to_dict())

        self.audit.log_event(
            AuditEventType.REMITTANCE_RESOLVED,
            entity_type="remittance",
            entity_id=doc_id,
            metadata={"expected": expected, "resolution": entry.resolved_issue},
            user_id=user_id
        )
        log_action(logger, "info", "Remittance resolved", user_id=user_id,
                   action="resolve_remittance", resource=f"remittance:{doc_id}",
                   extra={"expected": str(expected)})
        return entry

    @staticmethod
    def _require_date(value: Any) -> date:
        day = normalize_date(value)
        if day is None:
            raise ValidationError("Invalid date format")
        return day
