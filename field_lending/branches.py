"""
Branch Module

Branches group agents and carry monthly loan-count and disbursement targets
that are split across the branch's active agents.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .agents import AgentManager
from .exceptions import ValidationError, NotFoundError
from .money import ZERO, CENT, to_amount, amount_or_zero
from .logging_config import get_logger, log_action


logger = get_logger("fieldbook.branches")


@dataclass
class Branch(StorageRecord):
    name: str
    supervisor_name: str
    supervisor_email: str = ""
    supervisor_phone: str = ""
    address: str = ""
    loan_target: int = 0
    disbursement_target: Decimal = ZERO

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Branch':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['loan_target'] = int(data.get('loan_target') or 0)
        data['disbursement_target'] = amount_or_zero(data.get('disbursement_target'))
        return cls(**data)


def split_evenly(total_units: int, parts: int) -> List[int]:
    """Split an integer into ``parts`` shares; the remainder goes to the first shares"""
    base, remainder = divmod(total_units, parts)
    return [base + 1 if i < remainder else base for i in range(parts)]


class BranchManager:

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 agent_manager: AgentManager):
        self.storage = storage
        self.audit = audit_trail
        self.agent_manager = agent_manager
        self.table_name = "branches"

    def create_branch(self, name: str, supervisor_name: str, supervisor_email: str = "",
                      supervisor_phone: str = "", address: str = "",
                      branch_id: Optional[str] = None, user_id: Optional[str] = None) -> Branch:
        if not name or not name.strip():
            raise ValidationError("Branch name is required")
        if not supervisor_name or not supervisor_name.strip():
            raise ValidationError("Supervisor name is required")

        now = datetime.now(timezone.utc)
        branch = Branch(
            id=branch_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            supervisor_name=supervisor_name.strip(),
            supervisor_email=supervisor_email,
            supervisor_phone=supervisor_phone,
            address=address
        )
        self.storage.save(self.table_name, branch.id, branch.to_dict())

        self.audit.log_event(
            AuditEventType.BRANCH_CREATED,
            entity_type="branch",
            entity_id=branch.id,
            metadata={"name": branch.name},
            user_id=user_id
        )
        return branch

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        data = self.storage.load(self.table_name, branch_id)
        if data:
            return Branch.from_dict(data)
        return None

    def list_branches(self) -> List[Branch]:
        branches = [Branch.from_dict(data) for data in self.storage.load_all(self.table_name)]
        branches.sort(key=lambda b: b.name)
        return branches

    def set_targets(self, branch_id: str, loan_target: Optional[int] = None,
                    disbursement_target: Optional[Any] = None, distribute: bool = True,
                    user_id: Optional[str] = None) -> Branch:
        """
        Update a branch's targets and, by default, split them equally across
        the branch's active agents (ordered by id; leftover units and cents go
        to the first agents).
        """
        branch = self.get_branch(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch {branch_id} not found", {"branch_id": branch_id})

        if loan_target is not None:
            if isinstance(loan_target, bool) or not isinstance(loan_target, int) or loan_target < 0:
                raise ValidationError("Loan target must be a non-negative whole number")
            branch.loan_target = loan_target
        if disbursement_target is not None:
            amount = to_amount(disbursement_target)
            if amount is None or amount < ZERO:
                raise ValidationError("Disbursement target must be a non-negative amount")
            branch.disbursement_target = amount

        branch.updated_at = datetime.now(timezone.utc)

        with self.storage.atomic():
            self.storage.save(self.table_name, branch.id, branch.to_dict())
            agents = [a for a in self.agent_manager.list_agents(active_only=True)
                      if a.branch_id == branch.id]
            if distribute and agents:
                loan_shares = split_evenly(branch.loan_target, len(agents))
                cents = int(branch.disbursement_target / CENT)
                cent_shares = split_evenly(cents, len(agents))
                for agent, loans, cent_count in zip(agents, loan_shares, cent_shares):
                    targets = self.agent_manager.get_targets(agent.id)
                    targets.loan_target = loans
                    targets.disbursement_target = Decimal(cent_count) * CENT
                    self.storage.save(self.agent_manager.targets_table, agent.id, targets.to_dict())

        self.audit.log_event(
            AuditEventType.BRANCH_TARGETS_CHANGED,
            entity_type="branch",
            entity_id=branch.id,
            metadata={"loan_target": branch.loan_target,
                      "disbursement_target": branch.disbursement_target,
                      "agents": len(agents) if distribute else 0},
            user_id=user_id
        )
        log_action(logger, "info", f"Targets set for branch {branch.name}",
                   user_id=user_id, action="set_branch_targets", resource=f"branch:{branch.id}")
        return branch
