"""
Administrative endpoints: branches, interest rate and audit integrity
"""

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import get_lending_system, http_error, require_admin
from .schemas import CreateBranchRequest, BranchTargetsRequest, InterestRateRequest
from ..auth import Identity
from ..exceptions import FieldLendingError
from ..rates import StoredRateProvider
from ..service import FieldLendingSystem


router = APIRouter()


@router.post("/branches", status_code=status.HTTP_201_CREATED)
async def create_branch(
    request: CreateBranchRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    try:
        branch = system.branch_manager.create_branch(
            name=request.name,
            supervisor_name=request.supervisor_name,
            supervisor_email=request.supervisor_email,
            supervisor_phone=request.supervisor_phone,
            address=request.address,
            user_id=identity.subject_id
        )
    except FieldLendingError as e:
        raise http_error(e)
    return branch.to_dict()


@router.get("/branches")
async def list_branches(
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    branches = system.branch_manager.list_branches()
    return {"branches": [branch.to_dict() for branch in branches], "count": len(branches)}


@router.put("/branches/{branch_id}/targets")
async def set_branch_targets(
    branch_id: str,
    request: BranchTargetsRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Update branch targets and split them across the branch's active agents"""
    try:
        branch = system.branch_manager.set_targets(
            branch_id,
            loan_target=request.loan_target,
            disbursement_target=request.disbursement_target,
            distribute=request.distribute,
            user_id=identity.subject_id
        )
    except FieldLendingError as e:
        raise http_error(e)
    return branch.to_dict()


@router.get("/interest-rate")
async def get_interest_rate(
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    return {"rate": str(system.rate_provider.current_rate())}


@router.put("/interest-rate")
async def set_interest_rate(
    request: InterestRateRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Set the rate applied at approval; unavailable when a remote rate service is configured"""
    if not isinstance(system.rate_provider, StoredRateProvider):
        raise HTTPException(status_code=409, detail="Interest rate is managed by the rate service")
    try:
        record = system.rate_provider.set_rate(request.rate, request.description,
                                               user_id=identity.subject_id)
    except FieldLendingError as e:
        raise http_error(e)
    return record


@router.get("/audit/verify")
async def verify_audit_integrity(
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    return system.audit_trail.verify_integrity()
