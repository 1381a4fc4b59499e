"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# Loan schemas
class SubmitLoanRequest(BaseModel):
    agent_id: Optional[str] = Field(None, description="Submitting agent; admins only, defaults to the caller")
    loan_id: Optional[str] = None
    loan_type: str = Field(..., description="daily or weekly")
    amount_requested: Decimal
    customer_details: Dict[str, Any] = Field(default_factory=dict)
    business_details: Dict[str, Any] = Field(default_factory=dict)
    bank_details: Dict[str, Any] = Field(default_factory=dict)
    guarantor_details: Dict[str, Any] = Field(default_factory=dict)
    group_details: Dict[str, Any] = Field(default_factory=dict)
    pictures: Dict[str, Any] = Field(default_factory=dict)
    guarantor_form_pic: Optional[str] = None


class CallChecksRequest(BaseModel):
    call_cso: Optional[bool] = None
    call_customer: Optional[bool] = None
    call_guarantor: Optional[bool] = None
    call_group_leader: Optional[bool] = None


class ReasonRequest(BaseModel):
    reason: str


class ResubmitLoanRequest(BaseModel):
    updates: Dict[str, Any] = Field(default_factory=dict)


class ApproveLoanRequest(BaseModel):
    amount_approved: Decimal


class DisburseLoanRequest(BaseModel):
    disbursement_picture: Optional[str] = None
    disbursed_at: Optional[str] = None  # ISO date or datetime


class RecordPaymentRequest(BaseModel):
    amount: Decimal
    payment_date: Optional[str] = None  # ISO date string
    payment_id: Optional[str] = None


class TransferLoansRequest(BaseModel):
    loan_ids: List[str]
    agent_id: str


# Agent schemas
class CreateAgentRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str
    branch: str
    branch_id: str
    work_id: str = ""
    signature: Optional[str] = None
    agent_id: Optional[str] = None


class AgentTargetsRequest(BaseModel):
    loan_target: Optional[int] = None
    disbursement_target: Optional[Decimal] = None


class DefaultingTargetRequest(BaseModel):
    target: Decimal
    agent_id: Optional[str] = None


class BranchTransferRequest(BaseModel):
    branch: str
    branch_id: str


# Remittance schemas
class SubmitRemittanceRequest(BaseModel):
    date: str
    amount_paid: Decimal
    amount_collected: Optional[Decimal] = None
    image: Optional[str] = None
    remark: Optional[str] = None


class TellerAmountRequest(BaseModel):
    amount_on_teller: Decimal
    issue_resolution: Optional[str] = None


class ResolveRemittanceRequest(BaseModel):
    resolution: str


# Calendar schemas
class AddHolidayRequest(BaseModel):
    date: str
    reason: str = ""
    is_recurring: bool = False


# Admin schemas
class CreateBranchRequest(BaseModel):
    name: str
    supervisor_name: str
    supervisor_email: str = ""
    supervisor_phone: str = ""
    address: str = ""


class BranchTargetsRequest(BaseModel):
    loan_target: Optional[int] = None
    disbursement_target: Optional[Decimal] = None
    distribute: bool = True


class InterestRateRequest(BaseModel):
    rate: Decimal
    description: str


class RunAggregationRequest(BaseModel):
    as_of: Optional[str] = None
    include_inactive: bool = False
