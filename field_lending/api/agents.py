"""
Agent endpoints: identity, targets, outstanding dues and daily remittance
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import (
    get_collection_service, get_identity, get_lending_system, http_error,
    require_admin, require_self_or_admin, unwrap
)
from .schemas import (
    CreateAgentRequest, AgentTargetsRequest, DefaultingTargetRequest,
    BranchTransferRequest, SubmitRemittanceRequest, TellerAmountRequest,
    ResolveRemittanceRequest
)
from ..auth import Identity
from ..exceptions import FieldLendingError
from ..remittance import RemittanceEntry
from ..service import CollectionService, FieldLendingSystem


router = APIRouter()


def remittance_view(system: FieldLendingSystem, entry: RemittanceEntry) -> dict:
    data = entry.to_dict()
    data["remaining"] = str(entry.remaining)
    data["status"] = entry.reconciliation_status(system.remittance_ledger.tolerance).value
    return data


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_agent(
    request: CreateAgentRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Register a new agent"""
    try:
        agent = system.agent_manager.create_agent(
            first_name=request.first_name,
            last_name=request.last_name,
            email=request.email,
            phone=request.phone,
            branch=request.branch,
            branch_id=request.branch_id,
            work_id=request.work_id,
            signature=request.signature,
            agent_id=request.agent_id,
            user_id=identity.subject_id
        )
    except FieldLendingError as e:
        raise http_error(e)

    return {
        "agent_id": agent.id,
        "full_name": agent.full_name,
        "message": "Agent created successfully"
    }


@router.get("")
async def list_agents(
    active_only: bool = False,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """List agents"""
    agents = system.agent_manager.list_agents(active_only=active_only)
    return {"agents": [agent.to_dict() for agent in agents], "count": len(agents)}


@router.put("/defaulting-target")
async def set_defaulting_target(
    request: DefaultingTargetRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Set the defaulting ceiling for one agent, or every agent"""
    try:
        updated = system.agent_manager.set_defaulting_target(
            request.target, agent_id=request.agent_id, user_id=identity.subject_id)
    except FieldLendingError as e:
        raise http_error(e)
    return {"updated": updated, "message": "Defaulting target updated"}


@router.get("/{agent_id}")
async def get_agent(
    agent_id: str,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Get agent details with targets"""
    require_self_or_admin(agent_id, identity)
    agent = system.agent_manager.get_agent(agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail="Agent not found")
    return {
        **agent.to_dict(),
        "targets": system.agent_manager.get_targets(agent_id).to_dict()
    }


@router.post("/{agent_id}/deactivate")
async def deactivate_agent(
    agent_id: str,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    try:
        agent = system.agent_manager.set_active(agent_id, False, user_id=identity.subject_id)
    except FieldLendingError as e:
        raise http_error(e)
    return {"agent_id": agent.id, "is_active": agent.is_active}


@router.post("/{agent_id}/activate")
async def activate_agent(
    agent_id: str,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    try:
        agent = system.agent_manager.set_active(agent_id, True, user_id=identity.subject_id)
    except FieldLendingError as e:
        raise http_error(e)
    return {"agent_id": agent.id, "is_active": agent.is_active}


@router.put("/{agent_id}/targets")
async def set_agent_targets(
    agent_id: str,
    request: AgentTargetsRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Update an agent's loan-count and disbursement targets"""
    try:
        targets = system.agent_manager.set_targets(
            agent_id,
            loan_target=request.loan_target,
            disbursement_target=request.disbursement_target,
            user_id=identity.subject_id
        )
    except FieldLendingError as e:
        raise http_error(e)
    return targets.to_dict()


@router.post("/{agent_id}/transfer-branch")
async def transfer_branch(
    agent_id: str,
    request: BranchTransferRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Move an agent and their loans to another branch"""
    try:
        agent = system.agent_manager.transfer_branch(
            agent_id, request.branch, request.branch_id, user_id=identity.subject_id)
    except FieldLendingError as e:
        raise http_error(e)
    return {"agent_id": agent.id, "branch": agent.branch, "branch_id": agent.branch_id}


@router.get("/{agent_id}/outstanding")
async def get_outstanding(
    agent_id: str,
    as_of: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """Total outstanding dues across the agent's active loans"""
    require_self_or_admin(agent_id, identity)
    outstanding = unwrap(service.get_outstanding(agent_id, as_of))
    loans = system.loan_manager.outstanding_loans(agent_id, as_of)
    return {
        "agent_id": agent_id,
        "total_outstanding": str(outstanding),
        "loans": [
            {"loan_id": loan.id, **assessment.to_dict()}
            for loan, assessment in loans
        ]
    }


@router.get("/{agent_id}/delinquency-history")
async def get_delinquency_history(
    agent_id: str,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    require_self_or_admin(agent_id, identity)
    return system.agent_manager.get_delinquency_history(agent_id).to_dict()


@router.post("/{agent_id}/remittance", status_code=status.HTTP_201_CREATED)
async def submit_remittance(
    agent_id: str,
    request: SubmitRemittanceRequest,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """File (or add to) the agent's remittance for a day"""
    require_self_or_admin(agent_id, identity)
    entry = unwrap(service.submit_remittance(
        agent_id,
        request.date,
        request.amount_paid,
        amount_collected=request.amount_collected,
        image=request.image,
        remark=request.remark,
        user_id=identity.subject_id
    ))
    return remittance_view(system, entry)


@router.get("/{agent_id}/remittance")
async def get_remittance(
    agent_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Remittance entries in a date range with a reconciliation summary"""
    require_self_or_admin(agent_id, identity)
    ledger = system.remittance_ledger
    entries = ledger.get_entries(agent_id, start, end)
    return {
        "entries": [remittance_view(system, entry) for entry in entries],
        "summary": ledger.summarize(entries)
    }


@router.post("/{agent_id}/remittance/{entry_date}/teller")
async def record_teller_amount(
    agent_id: str,
    entry_date: str,
    request: TellerAmountRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Record what reached the teller for a day"""
    try:
        entry = system.remittance_ledger.record_teller_amount(
            agent_id, entry_date, request.amount_on_teller,
            issue_resolution=request.issue_resolution, user_id=identity.subject_id)
    except FieldLendingError as e:
        raise http_error(e)
    return remittance_view(system, entry)


@router.post("/{agent_id}/remittance/{entry_date}/resolve")
async def resolve_remittance(
    agent_id: str,
    entry_date: str,
    request: ResolveRemittanceRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """Administrator resolution of a day's remittance"""
    entry = unwrap(service.resolve_remittance(
        agent_id, entry_date, request.resolution, user_id=identity.subject_id))
    return remittance_view(system, entry)
