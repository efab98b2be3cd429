"""
Card Module

Debit and credit cards issued against an account.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import secrets

from .currency import Currency, Money
from .storage import StorageRecord


class CardType(Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class CardStatus(Enum):
    """Card lifecycle states"""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"


@dataclass
class Card(StorageRecord):
    """Payment card. A CREDIT card always carries a credit limit, a DEBIT card never does."""
    owner_id: str
    account_id: str
    type: CardType
    masked_number: str
    expiry_month: int
    expiry_year: int
    status: CardStatus = CardStatus.PENDING
    credit_limit: Optional[Money] = None
    version: int = 0
    
    def __post_init__(self):
        if self.type == CardType.CREDIT:
            if self.credit_limit is None or not self.credit_limit.is_positive():
                raise ValueError("CREDIT cards require a positive credit limit")
        elif self.credit_limit is not None:
            raise ValueError("DEBIT cards cannot carry a credit limit")
    
    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['credit_limit_currency'] = self.credit_limit.currency.code if self.credit_limit else None
        return result
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Card':
        data = dict(data)
        limit_currency = data.pop('credit_limit_currency', None)
        data['type'] = CardType(data['type'])
        data['status'] = CardStatus(data['status'])
        if data.get('credit_limit') is not None:
            data['credit_limit'] = Money(Decimal(data['credit_limit']), Currency[limit_currency])
        return super().from_dict(data)


def generate_masked_number() -> str:
    """Masked PAN showing only the last four digits (1000-9999)"""
    return f"**** **** **** {secrets.randbelow(9000) + 1000:04d}"


def new_card(card_id: str, now: datetime, owner_id: str, account_id: str, card_type: CardType,
             credit_limit: Optional[Money], validity_years: int = 3) -> Card:
    """Build a PENDING card expiring validity_years from now"""
    return Card(
        id=card_id,
        created_at=now,
        updated_at=now,
        owner_id=owner_id,
        account_id=account_id,
        type=card_type,
        masked_number=generate_masked_number(),
        expiry_month=now.month,
        expiry_year=now.year + validity_years,
        credit_limit=credit_limit
    )


def apply_card_patch(card: Card, changes: Dict[str, Any]) -> None:
    """Apply validated patch fields to a card"""
    if 'credit_limit' in changes:
        if card.type != CardType.CREDIT:
            raise ValueError("Only CREDIT cards have a credit limit")
        card.credit_limit = Money(changes['credit_limit'], card.credit_limit.currency)
