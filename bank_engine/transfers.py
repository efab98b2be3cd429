"""
Transfer Module

The Transfer record and its fee rule. Execution against account balances
lives in the ledger module.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .currency import Currency, Money
from .storage import StorageRecord


class TransferType(Enum):
    """Where the funds go"""
    EXTERNAL = "EXTERNAL"            # IBAN at another bank, fee applies
    INTERNAL = "INTERNAL"            # Another customer's account in this bank
    INTER_ACCOUNT = "INTER_ACCOUNT"  # Between two accounts of the same owner


class TransferStatus(Enum):
    """Transfer processing states"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class Transfer(StorageRecord):
    """Money transfer out of one of the owner's accounts"""
    owner_id: str
    from_account_id: str
    to_iban: str
    amount: Money
    fee: Money
    total_amount: Money
    currency: Currency
    type: TransferType
    status: TransferStatus = TransferStatus.PENDING
    to_account_id: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    version: int = 0
    
    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Transfer amount must be positive")
        if self.total_amount != self.amount + self.fee:
            raise ValueError("Transfer total must equal amount plus fee")
    
    @property
    def is_pending(self) -> bool:
        return self.status == TransferStatus.PENDING
    
    def reprice(self, amount: Money, fee: Money) -> None:
        """Set a new amount and fee, keeping the total consistent"""
        self.amount = amount
        self.fee = fee
        self.total_amount = amount + fee
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transfer':
        data = dict(data)
        currency = Currency[data['currency']]
        data['currency'] = currency
        data['type'] = TransferType(data['type'])
        data['status'] = TransferStatus(data['status'])
        for name in ('amount', 'fee', 'total_amount'):
            data[name] = Money(Decimal(data[name]), currency)
        if data.get('processed_at'):
            data['processed_at'] = datetime.fromisoformat(data['processed_at'])
        return super().from_dict(data)


def calculate_fee(transfer_type: TransferType, external_fee: Decimal, currency: Currency) -> Money:
    """
    Fee charged on top of the transfer amount
    
    Only EXTERNAL transfers are charged; the fee is debited from the source
    account and never credited to the destination.
    """
    if transfer_type == TransferType.EXTERNAL:
        return Money(external_fee, currency)
    return Money.zero(currency)
