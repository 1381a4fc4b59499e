"""
Agent Management Module

Field agents (CSOs) are stored as separate bounded contexts sharing the agent
id: identity, performance targets, and monthly delinquency history. The
remittance ledger lives in remittance.py.
"""

import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import ValidationError, NotFoundError, StateConflictError
from .money import ZERO, to_amount, amount_or_zero
from .logging_config import get_logger, log_action


logger = get_logger("fieldbook.agents")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Agent(StorageRecord):
    """Agent identity"""
    first_name: str
    last_name: str
    email: str
    phone: str
    branch: str
    branch_id: str
    work_id: str = ""
    is_active: bool = True
    signature: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Agent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


@dataclass
class AgentTargets:
    """Monthly performance targets of one agent"""
    agent_id: str
    loan_target: int = 0
    disbursement_target: Decimal = ZERO
    defaulting_target: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agent_id': self.agent_id,
            'loan_target': self.loan_target,
            'disbursement_target': str(self.disbursement_target),
            'defaulting_target': str(self.defaulting_target)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentTargets':
        return cls(
            agent_id=data['agent_id'],
            loan_target=int(data.get('loan_target') or 0),
            disbursement_target=amount_or_zero(data.get('disbursement_target')),
            defaulting_target=amount_or_zero(data.get('defaulting_target'))
        )


@dataclass
class MonthlyRecord:
    year: int
    month: int
    value: Decimal
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'year': self.year,
            'month': self.month,
            'value': str(self.value),
            'updated_at': self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MonthlyRecord':
        return cls(
            year=int(data['year']),
            month=int(data['month']),
            value=amount_or_zero(data.get('value')),
            updated_at=datetime.fromisoformat(data['updated_at'])
        )


@dataclass
class DelinquencyHistory:
    """Monthly overdue (30-59 days) and recovery (60+ days) totals of one agent"""
    agent_id: str
    overdue_records: List[MonthlyRecord] = field(default_factory=list)
    recovery_records: List[MonthlyRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agent_id': self.agent_id,
            'overdue_records': [r.to_dict() for r in self.overdue_records],
            'recovery_records': [r.to_dict() for r in self.recovery_records]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DelinquencyHistory':
        return cls(
            agent_id=data['agent_id'],
            overdue_records=[MonthlyRecord.from_dict(r) for r in data.get('overdue_records', [])],
            recovery_records=[MonthlyRecord.from_dict(r) for r in data.get('recovery_records', [])]
        )

    def value_for(self, series: str, year: int, month: int) -> Optional[Decimal]:
        for record in getattr(self, series):
            if record.year == year and record.month == month:
                return record.value
        return None


def _replace_month(records: List[MonthlyRecord], year: int, month: int,
                   value: Decimal, now: datetime) -> List[MonthlyRecord]:
    kept = [r for r in records if not (r.year == year and r.month == month)]
    kept.append(MonthlyRecord(year=year, month=month, value=value, updated_at=now))
    return kept


class AgentManager:
    """
    Agent identity, targets and delinquency history
    """

    REQUIRED_FIELDS = ('first_name', 'last_name', 'email', 'phone', 'branch', 'branch_id')

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit = audit_trail
        self.agents_table = "agents"
        self.targets_table = "agent_targets"
        self.delinquency_table = "agent_delinquency"
        # Set by the system wiring so branch transfers reach the agent's loans
        self.loan_manager = None

    def create_agent(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone: str,
        branch: str,
        branch_id: str,
        work_id: str = "",
        signature: Optional[str] = None,
        agent_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Agent:
        """
        Register a new agent

        Raises:
            ValidationError: If a required field is blank
            StateConflictError: If the email or id is already registered
        """
        values = {
            'first_name': first_name, 'last_name': last_name, 'email': email,
            'phone': phone, 'branch': branch, 'branch_id': branch_id
        }
        missing = [name for name in self.REQUIRED_FIELDS
                   if not isinstance(values[name], str) or not values[name].strip()]
        if missing:
            raise ValidationError(f"Missing required agent fields: {', '.join(missing)}",
                                  {"missing": missing})

        email = email.strip().lower()
        if self.storage.find(self.agents_table, {'email': email}):
            raise StateConflictError("Agent email already exists", {"email": email})

        agent_id = agent_id or str(uuid.uuid4())
        if self.storage.exists(self.agents_table, agent_id):
            raise StateConflictError(f"Agent {agent_id} already exists")

        now = _now()
        agent = Agent(
            id=agent_id,
            created_at=now,
            updated_at=now,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email,
            phone=phone.strip(),
            branch=branch.strip(),
            branch_id=branch_id.strip(),
            work_id=work_id,
            signature=signature
        )

        with self.storage.atomic():
            self.storage.save(self.agents_table, agent.id, agent.to_dict())
            self.storage.save(self.targets_table, agent.id, AgentTargets(agent_id=agent.id).to_dict())

        self.audit.log_event(
            AuditEventType.AGENT_CREATED,
            entity_type="agent",
            entity_id=agent.id,
            metadata={"email": email, "branch_id": agent.branch_id},
            user_id=user_id
        )
        log_action(logger, "info", f"Agent {agent.full_name} created",
                   user_id=user_id, action="create_agent", resource=f"agent:{agent.id}")
        return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        data = self.storage.load(self.agents_table, agent_id)
        if data:
            return Agent.from_dict(data)
        return None

    def require_agent(self, agent_id: str) -> Agent:
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found", {"agent_id": agent_id})
        return agent

    def list_agents(self, active_only: bool = False) -> List[Agent]:
        agents = [Agent.from_dict(data) for data in self.storage.load_all(self.agents_table)]
        if active_only:
            agents = [a for a in agents if a.is_active]
        agents.sort(key=lambda a: a.id)
        return agents

    def _save_agent(self, agent: Agent) -> None:
        agent.updated_at = _now()
        self.storage.save(self.agents_table, agent.id, agent.to_dict())

    def set_active(self, agent_id: str, is_active: bool, user_id: Optional[str] = None) -> Agent:
        if not isinstance(is_active, bool):
            raise ValidationError("is_active must be a boolean")
        agent = self.require_agent(agent_id)
        agent.is_active = is_active
        self._save_agent(agent)

        self.audit.log_event(
            AuditEventType.AGENT_UPDATED,
            entity_type="agent",
            entity_id=agent_id,
            metadata={"is_active": is_active},
            user_id=user_id
        )
        return agent

    def get_targets(self, agent_id: str) -> AgentTargets:
        data = self.storage.load(self.targets_table, agent_id)
        if data:
            return AgentTargets.from_dict(data)
        return AgentTargets(agent_id=agent_id)

    def set_targets(self, agent_id: str, loan_target: Optional[int] = None,
                    disbursement_target: Optional[Any] = None,
                    user_id: Optional[str] = None) -> AgentTargets:
        """Update an agent's loan-count and disbursement targets; None leaves a target unchanged"""
        self.require_agent(agent_id)
        targets = self.get_targets(agent_id)

        if loan_target is not None:
            if isinstance(loan_target, bool) or not isinstance(loan_target, int) or loan_target < 0:
                raise ValidationError("Loan target must be a non-negative whole number")
            targets.loan_target = loan_target
        if disbursement_target is not None:
            amount = to_amount(disbursement_target)
            if amount is None or amount < ZERO:
                raise ValidationError("Disbursement target must be a non-negative amount")
            targets.disbursement_target = amount

        self.storage.save(self.targets_table, agent_id, targets.to_dict())
        self.audit.log_event(
            AuditEventType.AGENT_TARGETS_CHANGED,
            entity_type="agent",
            entity_id=agent_id,
            metadata=targets.to_dict(),
            user_id=user_id
        )
        return targets

    def set_defaulting_target(self, target: Any, agent_id: Optional[str] = None,
                              user_id: Optional[str] = None) -> int:
        """
        Set the acceptable-defaulting ceiling for one agent, or for every
        agent when no id is given. The value is rounded to whole units.

        Returns:
            Number of agents updated
        """
        amount = to_amount(target)
        if amount is None or amount < ZERO:
            raise ValidationError("Provide a valid non-negative number", {"target": str(target)})
        rounded = amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP)

        if agent_id is not None:
            agent_ids = [self.require_agent(agent_id).id]
        else:
            agent_ids = [agent.id for agent in self.list_agents()]

        with self.storage.atomic():
            for current_id in agent_ids:
                targets = self.get_targets(current_id)
                targets.defaulting_target = rounded
                self.storage.save(self.targets_table, current_id, targets.to_dict())

        log_action(logger, "info", f"Defaulting target set to {rounded} for {len(agent_ids)} agent(s)",
                   user_id=user_id, action="set_defaulting_target",
                   resource=f"agent:{agent_id}" if agent_id else "agent:*")
        return len(agent_ids)

    def transfer_branch(self, agent_id: str, branch: str, branch_id: str,
                        user_id: Optional[str] = None) -> Agent:
        """Move an agent and every loan they own to another branch"""
        if not branch or not branch_id:
            raise ValidationError("Branch name and ID are required")
        agent = self.require_agent(agent_id)
        agent.branch = branch
        agent.branch_id = branch_id

        loan_locks = (self.loan_manager.lock_agent_loans(agent_id)
                      if self.loan_manager is not None else nullcontext())

        with loan_locks, self.storage.atomic():
            self._save_agent(agent)
            moved = 0
            if self.loan_manager is not None:
                moved = self.loan_manager.update_agent_branch(agent_id, branch, branch_id)

        self.audit.log_event(
            AuditEventType.AGENT_BRANCH_TRANSFERRED,
            entity_type="agent",
            entity_id=agent_id,
            metadata={"branch": branch, "branch_id": branch_id, "loans_moved": moved},
            user_id=user_id
        )
        log_action(logger, "info", f"Agent transferred to branch {branch}",
                   user_id=user_id, action="transfer_branch", resource=f"agent:{agent_id}",
                   extra={"loans_moved": moved})
        return agent

    def get_delinquency_history(self, agent_id: str) -> DelinquencyHistory:
        data = self.storage.load(self.delinquency_table, agent_id)
        if data:
            return DelinquencyHistory.from_dict(data)
        return DelinquencyHistory(agent_id=agent_id)

    def replace_monthly_delinquency(self, agent_id: str, year: int, month: int,
                                    overdue_value: Decimal, recovery_value: Decimal) -> DelinquencyHistory:
        """
        Replace the {year, month} entry of both delinquency series.

        Existing entries for that month are removed before the new ones are
        added, and both series are written in one document save inside a
        transaction.
        """
        with self.storage.lock(self.delinquency_table, agent_id):
            with self.storage.atomic():
                history = self.get_delinquency_history(agent_id)
                now = _now()
                history.overdue_records = _replace_month(
                    history.overdue_records, year, month, overdue_value, now)
                history.recovery_records = _replace_month(
                    history.recovery_records, year, month, recovery_value, now)
                self.storage.save(self.delinquency_table, agent_id, history.to_dict())
        return history
