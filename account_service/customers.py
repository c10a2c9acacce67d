"""
Customer Management Module

Manages customer profiles: the identity an account is attached to. Customers
are referenced by accounts, never owned by them, and are never physically
deleted; deactivation is refused while any of their accounts is still open.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import List, Optional, TYPE_CHECKING
import logging
import re
import uuid

from .storage import StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import CustomerNotFound, CustomerHasOpenAccounts, InvalidCustomerData

if TYPE_CHECKING:
    from .gateway import AccountGateway


logger = logging.getLogger("accounts.customers")

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_PATTERN = re.compile(r'^\+?[0-9]{7,15}$')


@dataclass
class Customer(StorageRecord):
    """
    Customer profile

    Email and phone are unique across all customers; the store's unique
    indexes enforce this at write time.
    """
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    is_active: bool = True
    version: int = 0

    def __post_init__(self):
        if not self.first_name or not self.first_name.strip():
            raise InvalidCustomerData("First name is required")
        if not self.last_name or not self.last_name.strip():
            raise InvalidCustomerData("Last name is required")
        self.first_name = self.first_name.strip()
        self.last_name = self.last_name.strip()

        # Email is compared case-insensitively, so store it normalised
        self.email = (self.email or "").strip().lower()
        if not EMAIL_PATTERN.match(self.email):
            raise InvalidCustomerData("Invalid email format")

        if self.phone is not None:
            # Blank means no phone
            self.phone = self.phone.strip() or None
        if self.phone is not None and not PHONE_PATTERN.match(self.phone):
            raise InvalidCustomerData("Phone number must be 7-15 digits with optional leading +")

    @property
    def full_name(self) -> str:
        """Get customer's full name"""
        return f"{self.first_name} {self.last_name}"


class CustomerManager:
    """
    Manages customer lifecycle
    """

    def __init__(self, gateway: "AccountGateway", audit_trail: Optional[AuditTrail] = None):
        self.gateway = gateway
        self.audit_trail = audit_trail

    def create_customer(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone: Optional[str] = None
    ) -> Customer:
        """
        Create a new customer

        Args:
            first_name: Customer's first name
            last_name: Customer's last name
            email: Customer's email address (unique)
            phone: Optional phone number (unique when present)

        Returns:
            Created Customer object

        Raises:
            InvalidCustomerData: If a field fails validation
            DuplicateCustomer: If the email or phone is already registered
        """
        now = datetime.now(timezone.utc)
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone
        )

        with self.gateway.atomic():
            self.gateway.save_customer(customer)
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.CUSTOMER_CREATED,
                    entity_type="customer",
                    entity_id=customer.id,
                    metadata={"full_name": customer.full_name, "email": customer.email}
                )

        logger.info(f"Created customer {customer.id}")
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        """Get customer by ID"""
        customer = self.gateway.find_customer_by_id(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found")
        return customer

    def get_customer_by_email(self, email: str) -> Optional[Customer]:
        """Get customer by email address, or None"""
        return self.gateway.find_customer_by_email(email)

    def update_customer(
        self,
        customer_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None
    ) -> Customer:
        """
        Update customer contact details; uniqueness is re-checked by the store

        A field left as None keeps its current value. Passing an empty string
        for phone removes the phone number.
        """
        with self.gateway.atomic():
            customer = self.get_customer(customer_id)
            old_data = {
                "first_name": customer.first_name,
                "last_name": customer.last_name,
                "email": customer.email,
                "phone": customer.phone
            }

            changes = {
                key: value for key, value in (
                    ("first_name", first_name),
                    ("last_name", last_name),
                    ("email", email),
                    ("phone", phone),
                ) if value is not None
            }
            # replace() re-runs __post_init__ validation on the new values
            updated = replace(customer, updated_at=datetime.now(timezone.utc), **changes)
            self.gateway.save_customer(updated)

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.CUSTOMER_UPDATED,
                    entity_type="customer",
                    entity_id=customer_id,
                    metadata={"old_data": old_data, "changes": changes}
                )

        logger.info(f"Updated customer {customer_id}")
        return updated

    def deactivate_customer(self, customer_id: str) -> Customer:
        """
        Deactivate a customer (soft delete)

        Raises:
            CustomerNotFound: If the customer does not exist
            CustomerHasOpenAccounts: If any referencing account is not closed
        """
        with self.gateway.atomic():
            customer = self.get_customer(customer_id)
            open_accounts: List[str] = [
                account.account_number
                for account in self.gateway.find_accounts_by_customer(customer_id)
                if not account.is_closed
            ]
            if open_accounts:
                raise CustomerHasOpenAccounts(
                    f"Customer {customer_id} still has open accounts: {', '.join(open_accounts)}"
                )

            customer.is_active = False
            customer.updated_at = datetime.now(timezone.utc)
            self.gateway.save_customer(customer)

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.CUSTOMER_DEACTIVATED,
                    entity_type="customer",
                    entity_id=customer_id,
                    metadata={"email": customer.email}
                )

        logger.info(f"Deactivated customer {customer_id}")
        return customer
