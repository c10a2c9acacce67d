"""
Error Taxonomy Module

Every failure the account core can report has its own exception type so
callers (and the HTTP layer) can tell the cases apart without parsing
messages. Only StorageUnavailable and ConcurrentUpdateConflict are retryable.
"""

from typing import Optional


class AccountServiceError(Exception):
    """Base class for all account service errors"""
    code = "account_service_error"
    retryable = False


# Domain rule violations

class InvalidAccountState(AccountServiceError, ValueError):
    """Construction or mutation would leave an account in an invalid state"""
    code = "invalid_account_state"


class InvalidCustomerData(AccountServiceError, ValueError):
    """Customer fields fail validation"""
    code = "invalid_customer_data"


class InsufficientFunds(AccountServiceError):
    """Balance change would break the account's balance floor"""
    code = "insufficient_funds"

    def __init__(self, message: str, account_number: Optional[str] = None):
        super().__init__(message)
        self.account_number = account_number


class InvalidTransition(AccountServiceError):
    """Illegal account status change"""
    code = "invalid_transition"


# Lookup misses

class AccountNotFound(AccountServiceError):
    """No account with the given id or number"""
    code = "account_not_found"


class CustomerNotFound(AccountServiceError):
    """No customer with the given id"""
    code = "customer_not_found"


# Uniqueness and referential integrity

class AccountNumberTaken(AccountServiceError):
    """Account number already held by another account"""
    code = "account_number_taken"

    def __init__(self, account_number: str):
        super().__init__(f"Account number {account_number} is already taken")
        self.account_number = account_number


class DuplicateCustomer(AccountServiceError):
    """Email or phone number already registered to another customer"""
    code = "duplicate_customer"

    def __init__(self, field: str, value: Optional[str]):
        super().__init__(f"A customer with {field} {value!r} already exists")
        self.field = field
        self.value = value


class CustomerHasOpenAccounts(AccountServiceError):
    """Customer still owns accounts that are not closed"""
    code = "customer_has_open_accounts"


# Concurrency and infrastructure

class ConcurrentUpdateConflict(AccountServiceError):
    """Account kept changing underneath an update until retries ran out"""
    code = "concurrent_update_conflict"
    retryable = True


class StaleCustomerVersion(ConcurrentUpdateConflict):
    """Stored customer changed since it was read"""

    def __init__(self, customer_id: str):
        super().__init__(f"Customer {customer_id} was modified concurrently")
        self.customer_id = customer_id


class StaleAuditHead(ConcurrentUpdateConflict):
    """Another writer advanced the audit chain since its head was read"""


class StorageUnavailable(AccountServiceError):
    """Transient storage failure (timeout, lost connection, locked database)"""
    code = "storage_unavailable"
    retryable = True


# Gateway-level signals, translated by the service

class DuplicateAccountNumber(AccountServiceError):
    """Unique index on account_number rejected a write"""
    code = "duplicate_account_number"

    def __init__(self, account_number: str):
        super().__init__(f"Account number {account_number} already stored")
        self.account_number = account_number


class StaleAccountVersion(AccountServiceError):
    """Stored account changed since it was read"""
    code = "stale_account_version"

    def __init__(self, account_id: str, expected_version: int):
        super().__init__(
            f"Account {account_id} changed since version {expected_version} was read"
        )
        self.account_id = account_id
        self.expected_version = expected_version


# Storage-level signals

class StorageError(Exception):
    """Base class for storage backend errors"""


class UniqueConstraintViolation(StorageError):
    """A unique index rejected an insert or update"""

    def __init__(self, table: str, field: Optional[str]):
        super().__init__(f"Unique constraint violated on {table}.{field or '?'}")
        self.table = table
        self.field = field


class StaleRecordError(StorageError):
    """Conditional update found a different version than expected"""

    def __init__(self, table: str, record_id: str, expected_version: int):
        super().__init__(
            f"Record {table}/{record_id} is not at version {expected_version}"
        )
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version
