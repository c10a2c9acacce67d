"""
Persistence Gateway Module

Durable storage of accounts and customers on top of a storage backend.
Uniqueness of account numbers, emails and phone numbers is delegated to
store-level unique indexes, and every update carries the version it was
read at, so stale writes are rejected rather than merged.
"""

from decimal import Decimal
from datetime import datetime
from typing import Dict, List, Optional
import logging

from .currency import Money, Currency
from .storage import StorageInterface
from .accounts import Account, AccountPolicy, AccountStatus, AccountType
from .customers import Customer
from .errors import (
    DuplicateAccountNumber, DuplicateCustomer, InvalidAccountState,
    StaleAccountVersion, StaleCustomerVersion, StaleRecordError,
    UniqueConstraintViolation
)


logger = logging.getLogger("accounts.gateway")


class AccountGateway:
    """
    Storage contract for the account core

    Lookups return None for a missing record; absence is not an error here.
    """

    def __init__(self, storage: StorageInterface, policy: Optional[AccountPolicy] = None):
        self.storage = storage
        self.policy = policy or AccountPolicy()
        self.accounts_table = "accounts"
        self.customers_table = "customers"

        self.storage.ensure_unique(self.accounts_table, "account_number")
        self.storage.ensure_unique(self.customers_table, "email")
        self.storage.ensure_unique(self.customers_table, "phone")

    def atomic(self):
        """Run a block as one unit of work against the store"""
        return self.storage.atomic()

    # Accounts

    def find_by_account_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        found = self.storage.find(self.accounts_table, {"account_number": account_number})
        return self._account_from_dict(found[0]) if found else None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        return self._account_from_dict(data) if data else None

    def find_accounts_by_customer(self, customer_id: str) -> List[Account]:
        """Reverse lookup through the stored customer reference"""
        found = self.storage.find(self.accounts_table, {"customer_id": customer_id})
        return [self._account_from_dict(data) for data in found]

    def save(self, account: Account) -> Account:
        """
        Insert a new account (version 0) or update a loaded one

        Raises:
            DuplicateAccountNumber: If another account already holds the number
            StaleAccountVersion: If the stored account changed since it was read
        """
        data = self._account_to_dict(account)
        try:
            if account.version == 0:
                account.version = self.storage.insert(self.accounts_table, account.id, data)
            else:
                account.version = self.storage.update(
                    self.accounts_table, account.id, data, account.version
                )
        except UniqueConstraintViolation as e:
            if e.field == "id":
                raise InvalidAccountState(f"Account id {account.id} is already stored") from e
            logger.info(f"Rejected duplicate account number {account.account_number}")
            raise DuplicateAccountNumber(account.account_number) from e
        except StaleRecordError as e:
            raise StaleAccountVersion(account.id, account.version) from e
        return account

    # Customers

    def find_customer_by_id(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.customers_table, customer_id)
        return self._customer_from_dict(data) if data else None

    def find_customer_by_email(self, email: str) -> Optional[Customer]:
        found = self.storage.find(self.customers_table, {"email": email.strip().lower()})
        return self._customer_from_dict(found[0]) if found else None

    def save_customer(self, customer: Customer) -> Customer:
        """
        Insert or conditionally update a customer

        Raises:
            DuplicateCustomer: If the email or phone belongs to another customer
            StaleCustomerVersion: If the customer changed since it was read
        """
        data = customer.to_dict()
        try:
            if customer.version == 0:
                customer.version = self.storage.insert(self.customers_table, customer.id, data)
            else:
                customer.version = self.storage.update(
                    self.customers_table, customer.id, data, customer.version
                )
        except UniqueConstraintViolation as e:
            field = e.field or "email"
            raise DuplicateCustomer(field, data.get(field)) from e
        except StaleRecordError as e:
            raise StaleCustomerVersion(customer.id) from e
        return customer

    # Serialisation

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        return {
            "id": account.id,
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat(),
            "account_number": account.account_number,
            "customer_id": account.customer_id,
            "account_type": account.account_type.value,
            "currency": account.currency.code,
            "balance": str(account.balance.amount),
            "status": account.status.value
        }

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency[data['currency']]
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            account_type=AccountType(data['account_type']),
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            status=AccountStatus(data['status']),
            version=data['version'],
            policy=self.policy
        )

    def _customer_from_dict(self, data: Dict) -> Customer:
        """Convert dictionary to Customer"""
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            phone=data.get('phone'),
            is_active=data.get('is_active', True),
            version=data['version']
        )
