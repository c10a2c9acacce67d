"""
Test suite for the account service

Tests the command and query surface end to end over real storage,
including concurrent creation and concurrent balance updates.
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from account_service.storage import InMemoryStorage, SQLiteStorage
from account_service.audit import AuditTrail, AuditEventType
from account_service.accounts import AccountPolicy, AccountStatus, AccountType
from account_service.gateway import AccountGateway
from account_service.customers import CustomerManager
from account_service.service import AccountService
from account_service.errors import (
    AccountNotFound, AccountNumberTaken, ConcurrentUpdateConflict,
    CustomerNotFound, InsufficientFunds, InvalidAccountState, InvalidTransition,
    StaleCustomerVersion
)


class InterferingGateway(AccountGateway):
    """Gateway that lets another writer bump a record just before each update"""

    def __init__(self, storage, interference: int, customer_interference: int = 0):
        super().__init__(storage)
        self.interference = interference
        self.customer_interference = customer_interference
        self.save_calls = 0

    def save_customer(self, customer):
        if customer.version and self.customer_interference > 0:
            self.customer_interference -= 1
            current = self.storage.load(self.customers_table, customer.id)
            self.storage.update(self.customers_table, customer.id, current, current["version"])
        return super().save_customer(customer)

    def save(self, account):
        self.save_calls += 1
        if account.version and self.interference > 0:
            self.interference -= 1
            current = self.storage.load(self.accounts_table, account.id)
            self.storage.update(self.accounts_table, account.id, current, current['version'])
        return super().save(account)


class InterferingAuditTrail(AuditTrail):
    """Audit trail whose head is advanced by another writer right after each read"""

    def __init__(self, storage, moves: int):
        super().__init__(storage)
        self.moves = moves
        self.head_reads = 0

    def _chain_head(self):
        self.head_reads += 1
        head = super()._chain_head()
        if self.moves > 0:
            self.moves -= 1
            current = self.storage.load(self.head_table, self.HEAD_ID)
            self.storage.update(self.head_table, self.HEAD_ID, current, current["version"])
        return head


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "service.db")
    yield backend
    backend.close()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def gateway(storage):
    return AccountGateway(storage, AccountPolicy(checking_overdraft_limit=Decimal('500.00')))


@pytest.fixture
def customer_manager(gateway, audit_trail):
    return CustomerManager(gateway, audit_trail)


@pytest.fixture
def service(gateway, audit_trail):
    return AccountService(gateway, audit_trail)


@pytest.fixture
def john(customer_manager):
    return customer_manager.create_customer("John", "Doe", "john.doe@example.com")


@pytest.fixture
def jane(customer_manager):
    return customer_manager.create_customer("Jane", "Smith", "jane.smith@example.com")


class TestCreateAccount:
    """Test opening accounts"""

    def test_open_savings_account(self, service, john, audit_trail):
        """Test John Doe opens a savings account"""
        view = service.create_account(john.id, "ACC-001", AccountType.SAVINGS, Decimal('100.00'), "USD")

        assert view.account_number == "ACC-001"
        assert view.customer_id == john.id
        assert view.customer_name == "John Doe"
        assert view.account_type == AccountType.SAVINGS
        assert view.balance == Decimal('100.00')
        assert view.currency == "USD"
        assert view.status == AccountStatus.ACTIVE

        events = audit_trail.get_events_for_entity("account", view.id)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.ACCOUNT_CREATED
        assert events[0].metadata["initial_balance"] == "100.00"

    def test_open_checking_account_in_overdraft(self, service, jane):
        """Test Jane Smith opens a checking account below zero within the limit"""
        view = service.create_account(jane.id, "ACC-002", "CHECKING", "-250.00", "EUR")
        assert view.balance == Decimal('-250.00')
        assert view.currency == "EUR"

    def test_unknown_customer(self, service):
        """Test accounts need an existing customer"""
        with pytest.raises(CustomerNotFound):
            service.create_account("missing", "ACC-001", "SAVINGS", 0, "USD")

    def test_number_taken(self, service, john, jane, audit_trail, storage):
        """Test a second account with the same number is refused"""
        service.create_account(john.id, "ACC-001", "SAVINGS", 0, "USD")
        events_before = audit_trail.count_events()

        with pytest.raises(AccountNumberTaken) as exc_info:
            service.create_account(jane.id, "ACC-001", "CHECKING", 0, "USD")

        assert exc_info.value.account_number == "ACC-001"
        assert storage.count("accounts") == 1
        assert audit_trail.count_events() == events_before
        assert service.get_account_by_number("ACC-001").customer_id == john.id

    def test_invalid_account_not_stored(self, service, john, storage):
        """Test rule violations store nothing"""
        with pytest.raises(InvalidAccountState):
            service.create_account(john.id, "ACC-001", "SAVINGS", "-1.00", "USD")
        with pytest.raises(InvalidAccountState):
            service.create_account(john.id, "ACC-001", "SAVINGS", "1.00", "XYZ")
        assert storage.count("accounts") == 0

    def test_oversized_initial_balance(self, service, john, storage):
        """Test a balance with more digits than decimal precision allows is refused"""
        with pytest.raises(InvalidAccountState, match="too large"):
            service.create_account(john.id, "ACC-001", "SAVINGS", "1" * 40, "USD")
        with pytest.raises(InvalidAccountState):
            service.create_account(john.id, "ACC-001", "SAVINGS", "1e30", "USD")
        assert storage.count("accounts") == 0

    def test_creation_advances_owner_version(self, service, gateway, john):
        """Test a deactivation based on a read from before the account existed cannot commit"""
        before = gateway.find_customer_by_id(john.id)
        service.create_account(john.id, "ACC-001", "SAVINGS", 0, "USD")

        assert gateway.find_customer_by_id(john.id).version == before.version + 1

        before.is_active = False
        with pytest.raises(StaleCustomerVersion):
            gateway.save_customer(before)
        assert gateway.find_customer_by_id(john.id).is_active

    def test_concurrent_creation_same_number(self, service, john):
        """Test exactly one of many simultaneous creations wins"""
        def attempt(_):
            try:
                service.create_account(john.id, "ACC-RACE", "SAVINGS", "1.00", "USD")
                return "created"
            except AccountNumberTaken:
                return "taken"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(16)))

        assert results.count("created") == 1
        assert results.count("taken") == 15
        assert len(service.list_customer_accounts(john.id)) == 1


class TestQueries:
    """Test account lookups"""

    def test_get_by_id_and_number(self, service, john):
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")

        assert service.get_account_by_id(view.id) == view
        assert service.get_account_by_number("ACC-001") == view

    def test_missing_account(self, service):
        with pytest.raises(AccountNotFound):
            service.get_account_by_id("missing")
        with pytest.raises(AccountNotFound):
            service.get_account_by_number("NOPE")

    def test_list_customer_accounts(self, service, john, jane):
        service.create_account(john.id, "ACC-001", "SAVINGS", 0, "USD")
        service.create_account(john.id, "ACC-002", "CHECKING", 0, "USD")
        service.create_account(jane.id, "ACC-003", "SAVINGS", 0, "USD")

        numbers = {v.account_number for v in service.list_customer_accounts(john.id)}
        assert numbers == {"ACC-001", "ACC-002"}
        assert service.list_customer_accounts(jane.id)[0].customer_name == "Jane Smith"

        with pytest.raises(CustomerNotFound):
            service.list_customer_accounts("missing")


class TestAdjustBalance:
    """Test balance-affecting commands"""

    def test_deposit_and_withdraw(self, service, john, audit_trail):
        """Test signed adjustments are persisted and audited"""
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "100.00", "USD")

        assert service.adjust_balance(view.id, "25.50").balance == Decimal('125.50')
        assert service.adjust_balance(view.id, Decimal('-100')).balance == Decimal('25.50')
        assert service.get_account_by_id(view.id).balance == Decimal('25.50')

        events = audit_trail.get_events_for_entity("account", view.id)
        adjustments = [e for e in events if e.event_type == AuditEventType.ACCOUNT_BALANCE_ADJUSTED]
        assert [e.metadata["new_balance"] for e in adjustments] == ["125.50", "25.50"]

    def test_insufficient_funds(self, service, john, audit_trail):
        """Test a rejected withdrawal leaves the stored balance unchanged"""
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "100.00", "USD")
        events_before = audit_trail.count_events()

        with pytest.raises(InsufficientFunds):
            service.adjust_balance(view.id, "-100.01")

        assert service.get_account_by_id(view.id).balance == Decimal('100.00')
        assert audit_trail.count_events() == events_before

    def test_checking_overdraft(self, service, jane):
        """Test CHECKING can use its overdraft but not exceed it"""
        view = service.create_account(jane.id, "ACC-002", "CHECKING", "0", "USD")
        assert service.adjust_balance(view.id, "-500.00").balance == Decimal('-500.00')
        with pytest.raises(InsufficientFunds):
            service.adjust_balance(view.id, "-0.01")

    def test_invalid_amounts(self, service, john):
        """Test malformed or over-precise deltas are rejected"""
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")
        for amount in ("abc", "1.001", None):
            with pytest.raises(InvalidAccountState):
                service.adjust_balance(view.id, amount)
        assert service.get_account_by_id(view.id).balance == Decimal('10.00')

    def test_oversized_amounts(self, service, john, audit_trail):
        """Test deltas beyond decimal precision are rule violations, not crashes"""
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")
        events_before = audit_trail.count_events()

        for amount in ("1e30", "1" * 40, Decimal("-1e30")):
            with pytest.raises(InvalidAccountState):
                service.adjust_balance(view.id, amount)

        assert service.get_account_by_id(view.id).balance == Decimal('10.00')
        assert audit_trail.count_events() == events_before

    def test_missing_account(self, service):
        with pytest.raises(AccountNotFound):
            service.adjust_balance("missing", "1.00")

    def test_concurrent_adjustments_all_applied(self, service, john):
        """Test N concurrent +1 adjustments raise the balance by exactly N"""
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "0", "USD")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: service.adjust_balance(view.id, "1"), range(50)))

        assert service.get_account_by_id(view.id).balance == Decimal('50.00')

    def test_concurrent_withdrawals_never_overdraw(self, service, john):
        """Test racing withdrawals cannot push SAVINGS below zero"""
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")

        def withdraw(_):
            try:
                service.adjust_balance(view.id, "-1.00")
                return True
            except InsufficientFunds:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(withdraw, range(25)))

        assert results.count(True) == 10
        assert service.get_account_by_id(view.id).balance == Decimal('0.00')


class TestOptimisticRetry:
    """Test stale-version retries"""

    def test_retry_after_stale_write(self, john, customer_manager):
        """Test a stale save is retried from a fresh read"""
        gateway = InterferingGateway(customer_manager.gateway.storage, interference=2)
        service = AccountService(gateway, max_update_retries=5)
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")

        result = service.adjust_balance(view.id, "5.00")

        assert result.balance == Decimal('15.00')
        assert gateway.save_calls == 4  # create + two stale attempts + success

    def test_retries_exhausted(self, john, customer_manager):
        """Test persistent conflicts surface as ConcurrentUpdateConflict"""
        gateway = InterferingGateway(customer_manager.gateway.storage, interference=100)
        service = AccountService(gateway, max_update_retries=3)
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")

        with pytest.raises(ConcurrentUpdateConflict) as exc_info:
            service.adjust_balance(view.id, "5.00")

        assert exc_info.value.retryable
        assert gateway.save_calls == 4
        assert service.get_account_by_id(view.id).balance == Decimal('10.00')

    def test_creation_retried_when_owner_changes(self, john, customer_manager):
        """Test a creation whose owner moved under it re-runs from a fresh read"""
        gateway = InterferingGateway(customer_manager.gateway.storage, interference=0,
                                     customer_interference=2)
        service = AccountService(gateway, max_update_retries=5)

        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")

        assert view.balance == Decimal('10.00')
        assert gateway.save_calls == 1  # stale attempts never reach the account write
        assert gateway.find_customer_by_id(john.id).version == 2

    def test_creation_gives_up_when_owner_keeps_changing(self, john, customer_manager, storage):
        gateway = InterferingGateway(storage, interference=0, customer_interference=100)
        service = AccountService(gateway, max_update_retries=3)

        with pytest.raises(ConcurrentUpdateConflict):
            service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")

        assert storage.count("accounts") == 0
        assert gateway.find_customer_by_id(john.id).version == 1

    def test_retry_after_audit_head_moved(self, service, gateway, storage, john, audit_trail):
        """Test losing the race for the audit chain head is retried, not reported"""
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")
        trail = InterferingAuditTrail(storage, moves=2)
        racing = AccountService(gateway, trail, max_update_retries=5)

        result = racing.adjust_balance(view.id, "5.00")

        assert result.balance == Decimal('15.00')
        assert trail.head_reads == 3
        adjustments = [
            e for e in audit_trail.get_events_for_entity("account", view.id)
            if e.event_type == AuditEventType.ACCOUNT_BALANCE_ADJUSTED
        ]
        assert len(adjustments) == 1
        assert audit_trail.verify_integrity()["valid"]

    def test_audit_head_retries_exhausted(self, service, gateway, storage, john):
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "10.00", "USD")
        trail = InterferingAuditTrail(storage, moves=100)
        racing = AccountService(gateway, trail, max_update_retries=3)

        with pytest.raises(ConcurrentUpdateConflict) as exc_info:
            racing.adjust_balance(view.id, "5.00")

        assert exc_info.value.retryable
        assert trail.head_reads == 3
        assert service.get_account_by_id(view.id).balance == Decimal('10.00')

    def test_retry_count_must_be_positive(self, gateway):
        with pytest.raises(ValueError):
            AccountService(gateway, max_update_retries=0)


class TestCrossConnectionConsistency:
    """Test two storage connections sharing one SQLite file"""

    def test_adjustments_from_two_connections(self, tmp_path):
        """Test concurrent writers on separate connections lose no updates"""
        db_path = tmp_path / "shared.db"
        first_storage = SQLiteStorage(db_path, timeout=10.0)
        second_storage = SQLiteStorage(db_path, timeout=10.0)
        try:
            first = AccountService(AccountGateway(first_storage))
            second = AccountService(AccountGateway(second_storage))
            customer = CustomerManager(first.gateway).create_customer("John", "Doe", "john@example.com")
            view = first.create_account(customer.id, "ACC-001", "SAVINGS", "0", "USD")

            def run(service):
                for _ in range(20):
                    service.adjust_balance(view.id, "1.00")

            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [pool.submit(run, first), pool.submit(run, second)]
                for future in futures:
                    future.result()

            assert first.get_account_by_id(view.id).balance == Decimal('40.00')
            assert second.get_account_by_number("ACC-001").balance == Decimal('40.00')

            with pytest.raises(AccountNumberTaken):
                second.create_account(customer.id, "ACC-001", "SAVINGS", "0", "USD")
        finally:
            first_storage.close()
            second_storage.close()


class TestLifecycle:
    """Test close and reactivate through the service"""

    def test_close_account(self, service, john, audit_trail):
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "20.00", "USD")

        with pytest.raises(InvalidTransition):
            service.close_account(view.id)

        service.adjust_balance(view.id, "-20.00")
        closed = service.close_account(view.id)
        assert closed.status == AccountStatus.CLOSED

        with pytest.raises(InvalidTransition):
            service.close_account(view.id)
        with pytest.raises(InvalidAccountState):
            service.adjust_balance(view.id, "1.00")

        # Closed accounts stay readable
        assert service.get_account_by_number("ACC-001").status == AccountStatus.CLOSED
        assert audit_trail.verify_integrity()["valid"]

    def test_reactivation_disabled(self, service, john):
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "0", "USD")
        service.close_account(view.id)
        with pytest.raises(InvalidTransition):
            service.reactivate_account(view.id)

    def test_reactivation_enabled(self, storage, customer_manager, john):
        gateway = AccountGateway(storage, AccountPolicy(allow_reactivation=True))
        service = AccountService(gateway)
        view = service.create_account(john.id, "ACC-001", "SAVINGS", "0", "USD")
        service.close_account(view.id)

        reopened = service.reactivate_account(view.id)
        assert reopened.status == AccountStatus.ACTIVE
        assert service.adjust_balance(view.id, "3.00").balance == Decimal('3.00')


class TestAccountScenarios:
    """Opening accounts and finding them again by number"""

    def test_savings_account_found_by_number(self, service, customer_manager):
        """Test John Doe's savings account reads back with its opening balance"""
        owner = customer_manager.create_customer("John", "Doe", "john@example.com", "1234567890")
        service.create_account(owner.id, "1234567890", AccountType.SAVINGS, Decimal('1000'), "USD")

        found = service.get_account_by_number("1234567890")

        assert found.balance == Decimal('1000')
        assert found.status == AccountStatus.ACTIVE
        assert found.account_type == AccountType.SAVINGS
        assert found.currency == "USD"
        assert found.customer_id == owner.id
        assert found.customer_name == "John Doe"

    def test_checking_account_found_by_number(self, service, customer_manager):
        """Test Jane Smith's checking account is returned exactly as created"""
        owner = customer_manager.create_customer("Jane", "Smith", "jane@example.com")
        created = service.create_account(owner.id, "9876543210", AccountType.CHECKING,
                                         Decimal('500'), "USD")

        found = service.get_account_by_number("9876543210")

        assert found == created
        assert found.balance == Decimal('500.00')
        assert found.account_type == AccountType.CHECKING
        assert found.customer_name == "Jane Smith"
