"""
Account Module

Customer deposit accounts (checking and savings): the Account record, its
lifecycle states and IBAN assignment.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional
import secrets
import string

from .currency import Currency, Money
from .storage import StorageRecord


class AccountType(Enum):
    """Deposit account products"""
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"


class AccountStatus(Enum):
    """Account lifecycle states"""
    PENDING = "PENDING"      # Awaiting admin approval
    ACTIVE = "ACTIVE"        # Normal operation
    FROZEN = "FROZEN"        # Temporarily suspended
    CANCELLED = "CANCELLED"  # Permanently closed


@dataclass
class Account(StorageRecord):
    """
    Bank account. The balance is held at the currency's minor-unit precision
    and may never go below zero.
    """
    owner_id: str
    type: AccountType
    iban: str
    balance: Money
    currency: Currency
    status: AccountStatus = AccountStatus.PENDING
    nickname: Optional[str] = None
    version: int = 0
    
    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValueError("Balance currency must match account currency")
        if self.balance.is_negative():
            raise ValueError("Account balance cannot be negative")
    
    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        currency = Currency[data['currency']]
        data['currency'] = currency
        data['type'] = AccountType(data['type'])
        data['status'] = AccountStatus(data['status'])
        data['balance'] = Money(Decimal(data['balance']), currency)
        return super().from_dict(data)


def _iban_check_digits(country_code: str, bban: str) -> str:
    """ISO 13616 mod-97 check digits"""
    rearranged = bban + country_code + "00"
    numeric = "".join(
        str(int(ch, 36)) if ch in string.ascii_letters else ch
        for ch in rearranged.upper()
    )
    return f"{98 - int(numeric) % 97:02d}"


def generate_iban(country_code: str = "GR", bank_code: str = "1234") -> str:
    """Generate an IBAN: country, check digits, bank code, 16-digit account number"""
    account_number = f"{secrets.randbelow(10 ** 16):016d}"
    bban = f"{bank_code}{account_number}"
    return f"{country_code}{_iban_check_digits(country_code, bban)}{bban}"


def is_valid_iban(iban: str) -> bool:
    """Verify the mod-97 checksum of an IBAN"""
    iban = iban.replace(" ", "").upper()
    if len(iban) < 5 or not iban[:2].isalpha() or not iban[2:4].isdigit():
        return False
    return _iban_check_digits(iban[:2], iban[4:]) == iban[2:4]


def new_account(account_id: str, now: datetime, owner_id: str, account_type: AccountType,
                currency: Currency, iban_exists: Callable[[str], bool],
                nickname: Optional[str] = None, country_code: str = "GR",
                bank_code: str = "1234") -> Account:
    """Build a PENDING account with a unique IBAN and a zero balance"""
    iban = generate_iban(country_code, bank_code)
    while iban_exists(iban):
        iban = generate_iban(country_code, bank_code)
    
    return Account(
        id=account_id,
        created_at=now,
        updated_at=now,
        owner_id=owner_id,
        type=account_type,
        iban=iban,
        balance=Money.zero(currency),
        currency=currency,
        nickname=nickname or None
    )


def apply_account_patch(account: Account, changes: Dict[str, Any]) -> None:
    """Apply validated patch fields to an account"""
    if 'nickname' in changes:
        account.nickname = changes['nickname'] or None
    if 'balance' in changes:
        account.balance = Money(changes['balance'], account.currency)
