"""
Pydantic schemas for API requests
"""

from typing import Optional
from pydantic import BaseModel, Field


# Customer schemas
class CreateCustomerRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None


class UpdateCustomerRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


# Account schemas
class CreateAccountRequest(BaseModel):
    customer_id: str
    account_number: str
    account_type: str = Field(..., description="Account type (SAVINGS, CHECKING)")
    initial_balance: str = Field("0", description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")


class AdjustBalanceRequest(BaseModel):
    amount: str = Field(..., description="Signed decimal amount as string")
