"""
Account Service Module

The only component allowed to mutate account state. Each command runs its
load-validate-save sequence as one atomic unit against the store; stale
writes are rejected by the version check and the whole sequence is re-run
from a fresh read, never merged.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from .currency import Money
from .accounts import Account, AccountType, AccountView
from .audit import AuditTrail, AuditEventType
from .gateway import AccountGateway
from .logging_config import log_action
from .errors import (
    AccountNotFound, AccountNumberTaken, ConcurrentUpdateConflict,
    CustomerNotFound, DuplicateAccountNumber, StaleAccountVersion,
    StaleAuditHead, StaleCustomerVersion
)


logger = logging.getLogger("accounts.service")

AmountLike = Union[Money, Decimal, int, str]

# A unit failing with one of these read something that moved before its write
STALE_READS = (StaleAccountVersion, StaleCustomerVersion, StaleAuditHead)


class AccountService:
    """
    Orchestrates account creation, queries and balance-affecting commands
    """

    def __init__(
        self,
        gateway: AccountGateway,
        audit_trail: Optional[AuditTrail] = None,
        max_update_retries: int = 5
    ):
        if max_update_retries < 1:
            raise ValueError("max_update_retries must be at least 1")
        self.gateway = gateway
        self.audit_trail = audit_trail
        self.max_update_retries = max_update_retries

    def _audit(self, event_type: AuditEventType, account: Account, metadata: Dict[str, Any]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="account",
                entity_id=account.id,
                metadata=dict(metadata, account_number=account.account_number)
            )

    def _view(self, account: Account) -> AccountView:
        customer = self.gateway.find_customer_by_id(account.customer_id)
        return AccountView.from_account(account, customer.full_name if customer else "")

    def _load(self, account_id: str) -> Account:
        account = self.gateway.find_by_id(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    # Commands

    def create_account(
        self,
        customer_id: str,
        account_number: str,
        account_type: Union[AccountType, str],
        initial_balance: AmountLike,
        currency: str
    ) -> AccountView:
        """
        Open a new account for an existing customer

        The store's unique index on account_number decides duplicates; there is
        no prior existence check, so concurrent creations with the same number
        cannot both succeed. The owner is re-saved at the version it was read
        at, so a concurrent deactivation of the same customer conflicts with
        the creation instead of slipping past it.

        Raises:
            CustomerNotFound: If the customer does not exist
            InvalidAccountState: If the account would violate an invariant
            AccountNumberTaken: If the number is already in use
            ConcurrentUpdateConflict: If the owner kept changing until retries ran out
        """
        def unit():
            customer = self.gateway.find_customer_by_id(customer_id)
            if customer is None:
                raise CustomerNotFound(f"Customer {customer_id} not found")

            account = Account.create(
                account_number=account_number,
                customer=customer,
                account_type=account_type,
                initial_balance=initial_balance,
                currency=currency,
                policy=self.gateway.policy
            )
            self.gateway.save_customer(customer)
            try:
                self.gateway.save(account)
            except DuplicateAccountNumber as e:
                raise AccountNumberTaken(account.account_number) from e

            self._audit(AuditEventType.ACCOUNT_CREATED, account, {
                "customer_id": customer.id,
                "account_type": account.account_type.value,
                "currency": account.currency.code,
                "initial_balance": account.balance.amount
            })
            return account, customer

        account, customer = self._with_retries("create_account", customer_id, unit)

        log_action(logger, "info", f"Created account {account.account_number}",
                   action="create_account", resource=account.id,
                   extra={"customer_id": customer.id, "account_type": account.account_type.value})
        return AccountView.from_account(account, customer.full_name)

    def adjust_balance(self, account_id: str, delta: AmountLike) -> AccountView:
        """
        Apply a signed balance change

        Raises:
            AccountNotFound: If the account does not exist
            InsufficientFunds: If the change would break the balance floor
            InvalidAccountState: If the account is closed or the amount is invalid
            ConcurrentUpdateConflict: If the account kept changing until retries ran out
        """
        def mutate(account: Account) -> Dict[str, Any]:
            previous = account.balance
            account.apply_delta(delta)
            return {
                "previous_balance": previous.amount,
                "delta": (account.balance - previous).amount,
                "new_balance": account.balance.amount
            }

        return self._update_account(account_id, mutate, AuditEventType.ACCOUNT_BALANCE_ADJUSTED,
                                    "adjust_balance")

    def close_account(self, account_id: str) -> AccountView:
        """
        Close a zero-balance active account

        Raises:
            AccountNotFound: If the account does not exist
            InvalidTransition: If already closed or the balance is not zero
        """
        def mutate(account: Account) -> Dict[str, Any]:
            account.close()
            return {"status": account.status.value}

        return self._update_account(account_id, mutate, AuditEventType.ACCOUNT_CLOSED,
                                    "close_account")

    def reactivate_account(self, account_id: str) -> AccountView:
        """
        Reopen a closed account, when the account policy allows it

        Raises:
            AccountNotFound: If the account does not exist
            InvalidTransition: If the account is active or reactivation is disabled
        """
        def mutate(account: Account) -> Dict[str, Any]:
            account.reactivate()
            return {"status": account.status.value}

        return self._update_account(account_id, mutate, AuditEventType.ACCOUNT_REACTIVATED,
                                    "reactivate_account")

    def _update_account(
        self,
        account_id: str,
        mutate: Callable[[Account], Dict[str, Any]],
        event_type: AuditEventType,
        action: str
    ) -> AccountView:
        """Load-mutate-save with optimistic concurrency, retried from a fresh read"""
        def unit():
            account = self._load(account_id)
            metadata = mutate(account)
            self.gateway.save(account)
            self._audit(event_type, account, metadata)
            return self._view(account), metadata

        view, metadata = self._with_retries(action, account_id, unit)

        log_action(logger, "info", f"{action} succeeded for {view.account_number}",
                   action=action, resource=account_id, extra=metadata)
        return view

    def _with_retries(self, action: str, resource: str, unit: Callable[[], Any]) -> Any:
        """Run unit atomically, re-running it from scratch whenever a read went stale"""
        for attempt in range(1, self.max_update_retries + 1):
            try:
                with self.gateway.atomic():
                    return unit()
            except STALE_READS as e:
                logger.info(f"{action} on {resource} hit a stale read (attempt {attempt}): {e}")

        logger.warning(f"{action} on {resource} gave up after {self.max_update_retries} attempts")
        raise ConcurrentUpdateConflict(
            f"{resource} changed concurrently {self.max_update_retries} times"
        )

    # Queries

    def get_account_by_id(self, account_id: str) -> AccountView:
        """Raises AccountNotFound if absent"""
        return self._view(self._load(account_id))

    def get_account_by_number(self, account_number: str) -> AccountView:
        """Raises AccountNotFound if absent"""
        account = self.gateway.find_by_account_number(account_number)
        if account is None:
            raise AccountNotFound(f"Account number {account_number} not found")
        return self._view(account)

    def list_customer_accounts(self, customer_id: str) -> List[AccountView]:
        """All accounts owned by a customer, open or closed"""
        customer = self.gateway.find_customer_by_id(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found")
        accounts = self.gateway.find_accounts_by_customer(customer_id)
        return [AccountView.from_account(account, customer.full_name) for account in accounts]
