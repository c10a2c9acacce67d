"""
Customer management endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import AccountSystem, get_account_system
from .schemas import CreateCustomerRequest, UpdateCustomerRequest
from ..customers import Customer


router = APIRouter()


def _customer_response(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "email": customer.email,
        "phone": customer.phone,
        "is_active": customer.is_active,
        "created_at": customer.created_at.isoformat()
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_customer(
    request: CreateCustomerRequest,
    system: AccountSystem = Depends(get_account_system)
):
    """Create a new customer"""
    customer = system.customer_manager.create_customer(
        first_name=request.first_name,
        last_name=request.last_name,
        email=request.email,
        phone=request.phone
    )
    return _customer_response(customer)


@router.get("/{customer_id}")
def get_customer(
    customer_id: str,
    system: AccountSystem = Depends(get_account_system)
):
    """Get customer by ID"""
    return _customer_response(system.customer_manager.get_customer(customer_id))


@router.put("/{customer_id}")
def update_customer(
    customer_id: str,
    request: UpdateCustomerRequest,
    system: AccountSystem = Depends(get_account_system)
):
    """Update customer information"""
    customer = system.customer_manager.update_customer(
        customer_id,
        first_name=request.first_name,
        last_name=request.last_name,
        email=request.email,
        phone=request.phone
    )
    return _customer_response(customer)


@router.post("/{customer_id}/deactivate")
def deactivate_customer(
    customer_id: str,
    system: AccountSystem = Depends(get_account_system)
):
    """Deactivate a customer with no open accounts"""
    return _customer_response(system.customer_manager.deactivate_customer(customer_id))


@router.get("/{customer_id}/accounts")
def list_customer_accounts(
    customer_id: str,
    system: AccountSystem = Depends(get_account_system)
):
    """List all accounts owned by a customer"""
    views = system.account_service.list_customer_accounts(customer_id)
    return {"accounts": [view.to_dict() for view in views]}
