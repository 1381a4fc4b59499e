"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import (
    get_collection_service, get_identity, get_lending_system, http_error,
    require_admin, require_self_or_admin, unwrap
)
from .schemas import (
    SubmitLoanRequest, CallChecksRequest, ReasonRequest, ResubmitLoanRequest,
    ApproveLoanRequest, DisburseLoanRequest, RecordPaymentRequest, TransferLoansRequest
)
from ..auth import Identity
from ..exceptions import FieldLendingError
from ..loans import Loan, LoanStatus
from ..service import CollectionService, FieldLendingSystem


router = APIRouter()


def loan_view(system: FieldLendingSystem, loan: Loan) -> dict:
    data = system.loan_manager.loan_to_dict(loan)
    data["remaining_balance"] = str(loan.remaining_balance)
    return data


def _owned_loan(system: FieldLendingSystem, loan_id: str, identity: Identity) -> Loan:
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    require_self_or_admin(loan.agent_id, identity)
    return loan


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_loan(
    request: SubmitLoanRequest,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """Submit a loan application"""
    agent_id = request.agent_id or identity.subject_id
    require_self_or_admin(agent_id, identity)

    payload = request.model_dump(exclude={"agent_id"}, exclude_none=True)
    payload["amount_requested"] = str(request.amount_requested)
    loan = unwrap(service.submit_loan(agent_id, payload, user_id=identity.subject_id))
    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "message": "Loan submitted successfully"
    }


@router.get("")
async def list_loans(
    status_filter: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """List loans; agents only see their own"""
    manager = system.loan_manager
    if status_filter:
        try:
            loans = manager.get_loans_by_status(LoanStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown loan status: {status_filter}")
    else:
        loans = manager.list_loans()

    if not identity.is_admin:
        loans = [loan for loan in loans if loan.agent_id == identity.subject_id]

    return {
        "loans": [loan_view(system, loan) for loan in loans],
        "count": len(loans)
    }


@router.post("/transfer")
async def transfer_loans(
    request: TransferLoansRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """Reassign loans to another agent"""
    loans = unwrap(service.transfer_loans(request.loan_ids, request.agent_id,
                                          user_id=identity.subject_id))
    return {
        "transferred": [loan.id for loan in loans],
        "agent_id": request.agent_id,
        "message": f"{len(loans)} loans transferred"
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    return loan_view(system, _owned_loan(system, loan_id, identity))


@router.get("/{loan_id}/delinquency")
async def get_loan_delinquency(
    loan_id: str,
    as_of: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Delinquency assessment of a loan"""
    loan = _owned_loan(system, loan_id, identity)
    try:
        assessment = system.classifier.classify(loan, as_of)
    except FieldLendingError as e:
        raise http_error(e)
    return {"loan_id": loan.id, **assessment.to_dict()}


@router.post("/{loan_id}/call-checks")
async def update_call_checks(
    loan_id: str,
    request: CallChecksRequest,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """Record verification calls"""
    flags = request.model_dump(exclude_none=True)
    loan = unwrap(service.update_call_checks(loan_id, user_id=identity.subject_id, **flags))
    return {"loan_id": loan.id, "call_checks": loan.call_checks.to_dict()}


@router.post("/{loan_id}/request-edit")
async def request_edit(
    loan_id: str,
    request: ReasonRequest,
    identity: Identity = Depends(require_admin),
    service: CollectionService = Depends(get_collection_service)
):
    """Send a loan back to its agent for corrections"""
    loan = unwrap(service.request_edit(loan_id, request.reason, user_id=identity.subject_id))
    return {"loan_id": loan.id, "status": loan.status.value, "message": "Edit requested"}


@router.post("/{loan_id}/resubmit")
async def resubmit_loan(
    loan_id: str,
    request: ResubmitLoanRequest,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """Resubmit an edited loan"""
    _owned_loan(system, loan_id, identity)
    loan = unwrap(service.resubmit_loan(loan_id, request.updates, user_id=identity.subject_id))
    return {"loan_id": loan.id, "status": loan.status.value, "message": "Loan resubmitted"}


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    identity: Identity = Depends(require_admin),
    service: CollectionService = Depends(get_collection_service)
):
    """Approve a loan"""
    loan = unwrap(service.approve_loan(loan_id, request.amount_approved, user_id=identity.subject_id))
    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "amount_approved": str(loan.amount_approved),
        "interest": str(loan.interest),
        "amount_to_be_paid": str(loan.amount_to_be_paid),
        "daily_amount": str(loan.daily_amount),
        "message": "Loan approved successfully"
    }


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    identity: Identity = Depends(require_admin),
    service: CollectionService = Depends(get_collection_service)
):
    """Disburse an approved loan"""
    loan = unwrap(service.disburse_loan(
        loan_id,
        disbursement_picture=request.disbursement_picture,
        disbursed_at=request.disbursed_at,
        user_id=identity.subject_id
    ))
    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "disbursed_at": loan.disbursed_at.isoformat(),
        "installments": len(loan.repayment_schedule),
        "message": "Loan disbursed successfully"
    }


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: ReasonRequest,
    identity: Identity = Depends(require_admin),
    service: CollectionService = Depends(get_collection_service)
):
    """Reject a loan"""
    loan = unwrap(service.reject_loan(loan_id, request.reason, user_id=identity.subject_id))
    return {"loan_id": loan.id, "status": loan.status.value, "message": "Loan rejected"}


@router.post("/{loan_id}/payments")
async def record_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """Record a repayment"""
    _owned_loan(system, loan_id, identity)
    loan = unwrap(service.record_payment(
        loan_id,
        request.amount,
        payment_date=request.payment_date,
        payment_id=request.payment_id,
        user_id=identity.subject_id
    ))
    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "amount_paid_so_far": str(loan.amount_paid_so_far),
        "remaining_balance": str(loan.remaining_balance),
        "message": "Payment recorded successfully"
    }


@router.post("/{loan_id}/sync")
async def sync_repayment_schedule(
    loan_id: str,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system),
    service: CollectionService = Depends(get_collection_service)
):
    """Rebuild a loan's schedule from its payment ledger"""
    _owned_loan(system, loan_id, identity)
    loan = unwrap(service.sync_repayment_schedule(loan_id, user_id=identity.subject_id))
    return loan_view(system, loan)
