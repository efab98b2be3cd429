"""
Bank Engine facade

Wires storage, audit trail, idempotency store, lifecycle engine and transfer
ledger together from one configuration.
"""

from typing import Any, Dict, Optional

from .audit import AuditTrail
from .config import EngineConfig, get_config
from .idempotency import IdempotencyStore
from .ledger import TransferLedger
from .lifecycle import LifecycleEngine, ResourceKind
from .logging_config import setup_logging
from .rbac import Principal
from .storage import StorageInterface, create_storage
from .transfers import Transfer


class BankingEngine:
    """Bank engine with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[EngineConfig] = None):
        self.config = config or get_config()

        # Initialize storage
        if storage is None:
            storage = create_storage(self.config.database_url, self.config.storage_timeout_seconds)
        self.storage = storage

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.idempotency = IdempotencyStore(self.storage)
        self.lifecycle = LifecycleEngine(self.storage, self.audit_trail, self.idempotency, self.config)
        self.transfers = TransferLedger(self.storage, self.audit_trail, self.idempotency, self.config)

    @classmethod
    def from_config(cls, config: Optional[EngineConfig] = None) -> 'BankingEngine':
        """Configure logging and build an engine on the configured storage"""
        config = config or get_config()
        setup_logging(
            level=config.log_level,
            log_format=config.log_format,
            log_file=config.log_file
        )
        return cls(config=config)

    # Shorthands for the kind-parameterized operations

    def create_account(self, principal: Principal, fields: Any, idempotency_key: Optional[str] = None):
        return self.lifecycle.create(ResourceKind.ACCOUNT, principal, fields, idempotency_key)

    def create_card(self, principal: Principal, fields: Any, idempotency_key: Optional[str] = None):
        return self.lifecycle.create(ResourceKind.CARD, principal, fields, idempotency_key)

    def create_loan(self, principal: Principal, fields: Any, idempotency_key: Optional[str] = None):
        return self.lifecycle.create(ResourceKind.LOAN, principal, fields, idempotency_key)

    def create_transfer(self, principal: Principal, fields: Any,
                        idempotency_key: Optional[str] = None) -> Transfer:
        return self.transfers.create(principal, fields, idempotency_key)

    def process_transfer(self, transfer_id: str, principal: Principal,
                         idempotency_key: Optional[str] = None) -> Transfer:
        return self.transfers.process(transfer_id, principal, idempotency_key)

    def verify_audit_integrity(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.storage.close()
