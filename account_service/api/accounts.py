"""
Account management endpoints

Handlers are plain functions so FastAPI runs them in its threadpool;
the service and storage layers are synchronous.
"""

from fastapi import APIRouter, Depends, status

from .dependencies import AccountSystem, get_account_system
from .schemas import CreateAccountRequest, AdjustBalanceRequest


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    system: AccountSystem = Depends(get_account_system)
):
    """Open a new account for an existing customer"""
    view = system.account_service.create_account(
        customer_id=request.customer_id,
        account_number=request.account_number,
        account_type=request.account_type,
        initial_balance=request.initial_balance,
        currency=request.currency
    )
    return view.to_dict()


@router.get("/by-number/{account_number}")
def get_account_by_number(
    account_number: str,
    system: AccountSystem = Depends(get_account_system)
):
    """Get account by its account number"""
    return system.account_service.get_account_by_number(account_number).to_dict()


@router.get("/{account_id}")
def get_account(
    account_id: str,
    system: AccountSystem = Depends(get_account_system)
):
    """Get account details"""
    return system.account_service.get_account_by_id(account_id).to_dict()


@router.post("/{account_id}/adjustments")
def adjust_balance(
    account_id: str,
    request: AdjustBalanceRequest,
    system: AccountSystem = Depends(get_account_system)
):
    """Apply a signed balance change"""
    return system.account_service.adjust_balance(account_id, request.amount).to_dict()


@router.post("/{account_id}/close")
def close_account(
    account_id: str,
    system: AccountSystem = Depends(get_account_system)
):
    """Close a zero-balance account"""
    return system.account_service.close_account(account_id).to_dict()


@router.post("/{account_id}/reactivate")
def reactivate_account(
    account_id: str,
    system: AccountSystem = Depends(get_account_system)
):
    """Reopen a closed account"""
    return system.account_service.reactivate_account(account_id).to_dict()
