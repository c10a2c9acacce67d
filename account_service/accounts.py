"""
Account Aggregate Module

The account entity plus the invariants that must hold across its fields:
a non-empty immutable account number, a non-null owner reference, a fixed
type and currency, a balance that never drops below the type's floor, and a
status that only moves ACTIVE -> CLOSED unless reactivation is enabled.
"""

from decimal import Decimal, ROUND_DOWN
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
from enum import Enum
import uuid

from .currency import Money, Currency, to_decimal
from .storage import StorageRecord
from .customers import Customer
from .errors import InvalidAccountState, InsufficientFunds, InvalidTransition


class AccountType(Enum):
    """Account products (closed set)"""
    SAVINGS = "SAVINGS"
    CHECKING = "CHECKING"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"    # Normal operation
    CLOSED = "CLOSED"    # Closed; kept for history, never deleted


@dataclass(frozen=True)
class AccountPolicy:
    """
    Configurable balance and lifecycle rules

    checking_overdraft_limit is how far below zero a CHECKING balance may go.
    SAVINGS balances never go below zero.
    """
    checking_overdraft_limit: Decimal = Decimal('0')
    allow_reactivation: bool = False

    def __post_init__(self):
        limit = to_decimal(self.checking_overdraft_limit)
        if limit < 0:
            raise ValueError("Overdraft limit must be non-negative")
        object.__setattr__(self, 'checking_overdraft_limit', limit)

    @classmethod
    def from_config(cls, config) -> "AccountPolicy":
        return cls(
            checking_overdraft_limit=Decimal(config.checking_overdraft_limit),
            allow_reactivation=config.allow_reactivation
        )

    def balance_floor(self, account_type: AccountType, currency: Currency) -> Money:
        """Lowest balance an account of this type may hold"""
        if account_type == AccountType.CHECKING:
            # A limit finer than the currency's minor unit cannot be reached anyway
            limit = self.checking_overdraft_limit.quantize(currency.quantum, rounding=ROUND_DOWN)
            return Money(-limit, currency)
        return Money.zero(currency)


_FIXED_FIELDS = frozenset({
    'id', 'account_number', 'customer_id', 'account_type', 'currency', 'created_at'
})


@dataclass
class Account(StorageRecord):
    """
    Bank account aggregate

    Use Account.create() for new accounts. The balance changes only through
    apply_delta(); identity, number, owner, type and currency are fixed once set.
    """
    account_number: str
    customer_id: str
    account_type: AccountType
    currency: Currency
    balance: Money
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 0
    policy: AccountPolicy = field(default_factory=AccountPolicy, repr=False, compare=False)

    def __post_init__(self):
        if not isinstance(self.account_number, str) or not self.account_number.strip():
            raise InvalidAccountState("Account number is required")
        if not self.customer_id:
            raise InvalidAccountState("Account must reference a customer")
        if not isinstance(self.account_type, AccountType):
            raise InvalidAccountState(f"Unknown account type: {self.account_type!r}")
        if not isinstance(self.currency, Currency):
            raise InvalidAccountState(f"Unrecognized currency: {self.currency!r}")
        if not isinstance(self.balance, Money):
            raise InvalidAccountState("Balance is required")
        if self.balance.currency != self.currency:
            raise InvalidAccountState(
                f"Balance currency {self.balance.currency.code} does not match "
                f"account currency {self.currency.code}"
            )

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _FIXED_FIELDS and name in self.__dict__ and self.__dict__[name] != value:
            raise InvalidAccountState(f"{name} cannot be changed after creation")
        super().__setattr__(name, value)

    @classmethod
    def create(
        cls,
        account_number: str,
        customer: Optional[Customer],
        account_type: Union[AccountType, str],
        initial_balance: Union[Money, Decimal, int, str],
        currency: Union[Currency, str],
        policy: Optional[AccountPolicy] = None
    ) -> "Account":
        """
        Create a new ACTIVE account

        Raises:
            InvalidAccountState: If the number is empty, the customer is absent
                or inactive, the type or currency is not recognized, or the
                initial balance is malformed or below the type's floor
        """
        policy = policy or AccountPolicy()

        if not isinstance(account_number, str) or not account_number.strip():
            raise InvalidAccountState("Account number is required")
        if customer is None:
            raise InvalidAccountState("Account must reference a customer")
        if not customer.is_active:
            raise InvalidAccountState(f"Customer {customer.id} is not active")

        try:
            if isinstance(account_type, str):
                account_type = account_type.strip().upper()
            account_type = AccountType(account_type)
        except ValueError:
            raise InvalidAccountState(f"Unknown account type: {account_type!r}")

        try:
            currency = Currency.from_code(currency)
        except ValueError as e:
            raise InvalidAccountState(str(e))

        balance = _to_money(initial_balance, currency)
        floor = policy.balance_floor(account_type, currency)
        if balance < floor:
            raise InvalidAccountState(
                f"Initial balance {balance.to_string()} is below the "
                f"{account_type.value} minimum of {floor.to_string()}"
            )

        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=account_number.strip(),
            customer_id=customer.id,
            account_type=account_type,
            currency=currency,
            balance=balance,
            policy=policy
        )

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == AccountStatus.CLOSED

    @property
    def balance_floor(self) -> Money:
        return self.policy.balance_floor(self.account_type, self.currency)

    def apply_delta(self, amount: Union[Money, Decimal, int, str]) -> Money:
        """
        Adjust the balance by a signed amount in the account currency

        The caller is responsible for persisting the new state.

        Returns:
            The new balance

        Raises:
            InsufficientFunds: If the result would fall below the balance floor
            InvalidAccountState: If the account is closed or the amount is
                malformed or in another currency
        """
        if self.is_closed:
            raise InvalidAccountState(f"Account {self.account_number} is closed")

        delta = _to_money(amount, self.currency)
        try:
            new_balance = self.balance + delta
        except ValueError as e:
            raise InvalidAccountState(str(e))
        if new_balance < self.balance_floor:
            raise InsufficientFunds(
                f"Insufficient funds in {self.account_number}: balance "
                f"{self.balance.to_string()}, change {delta.to_string()}, "
                f"minimum {self.balance_floor.to_string()}",
                account_number=self.account_number
            )

        self.balance = new_balance
        self.updated_at = datetime.now(timezone.utc)
        return new_balance

    def close(self) -> None:
        """
        Transition ACTIVE -> CLOSED

        Raises:
            InvalidTransition: If already closed or the balance is not zero
        """
        if self.is_closed:
            raise InvalidTransition(f"Account {self.account_number} is already closed")
        if not self.balance.is_zero():
            raise InvalidTransition(
                f"Cannot close account with non-zero balance: {self.balance.to_string()}"
            )
        self.status = AccountStatus.CLOSED
        self.updated_at = datetime.now(timezone.utc)

    def reactivate(self) -> None:
        """
        Transition CLOSED -> ACTIVE, only when the policy allows it

        Raises:
            InvalidTransition: If the account is not closed or reactivation is disabled
        """
        if not self.is_closed:
            raise InvalidTransition(f"Account {self.account_number} is not closed")
        if not self.policy.allow_reactivation:
            raise InvalidTransition("Reactivation of closed accounts is not enabled")
        self.status = AccountStatus.ACTIVE
        self.updated_at = datetime.now(timezone.utc)


def _to_money(amount: Union[Money, Decimal, int, str], currency: Currency) -> Money:
    """Interpret an amount in the given currency, never converting between currencies"""
    if isinstance(amount, Money):
        if amount.currency != currency:
            raise InvalidAccountState(
                f"Amount in {amount.currency.code} cannot be applied to a "
                f"{currency.code} account"
            )
        return amount
    if amount is None:
        raise InvalidAccountState("Amount is required")
    try:
        return Money(to_decimal(amount), currency)
    except ValueError as e:
        raise InvalidAccountState(str(e))


@dataclass(frozen=True)
class AccountView:
    """Read-only projection of an account handed to callers"""
    id: str
    account_number: str
    customer_id: str
    customer_name: str
    account_type: AccountType
    balance: Decimal
    currency: str
    status: AccountStatus
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account, customer_name: str = "") -> "AccountView":
        return cls(
            id=account.id,
            account_number=account.account_number,
            customer_id=account.customer_id,
            customer_name=customer_name,
            account_type=account.account_type,
            balance=account.balance.amount,
            currency=account.currency.code,
            status=account.status,
            created_at=account.created_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_number": self.account_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "account_type": self.account_type.value,
            "balance": str(self.balance),
            "currency": self.currency,
            "status": self.status.value,
            "created_at": self.created_at.isoformat()
        }
