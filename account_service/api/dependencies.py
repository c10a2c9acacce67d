"""
Shared system container and FastAPI dependencies
"""

from typing import Optional
import logging

from ..config import AccountServiceConfig, get_config
from ..storage import StorageInterface, create_storage
from ..accounts import AccountPolicy
from ..audit import AuditTrail
from ..gateway import AccountGateway
from ..customers import CustomerManager
from ..service import AccountService


logger = logging.getLogger("accounts.api")


class AccountSystem:
    """Account service with all components initialized"""

    def __init__(
        self,
        config: Optional[AccountServiceConfig] = None,
        storage: Optional[StorageInterface] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url, timeout=self.config.storage_timeout_seconds
        )

        # Initialize core components
        self.policy = AccountPolicy.from_config(self.config)
        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.gateway = AccountGateway(self.storage, self.policy)
        self.customer_manager = CustomerManager(self.gateway, self.audit_trail)
        self.account_service = AccountService(
            self.gateway, self.audit_trail, max_update_retries=self.config.max_update_retries
        )

    def close(self) -> None:
        self.storage.close()


_account_system: Optional[AccountSystem] = None


def get_account_system() -> AccountSystem:
    """Lazily build the process-wide system from configuration"""
    global _account_system
    if _account_system is None:
        _account_system = AccountSystem()
        logger.info("Account system initialized")
    return _account_system
