"""
Loan Module

Loan applications: principal, annual rate and term, with the monthly payment
always derived by the Loan Terms Calculator and never taken from the client.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .amortization import monthly_payment
from .currency import Currency, Money
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"      # Application awaiting review
    APPROVED = "APPROVED"    # Approved, not yet disbursed
    REJECTED = "REJECTED"    # Declined by an admin (kept for the record)
    ACTIVE = "ACTIVE"        # In repayment
    PAID = "PAID"            # Fully repaid
    CANCELLED = "CANCELLED"


@dataclass
class Loan(StorageRecord):
    """Loan application and its derived repayment terms"""
    owner_id: str
    principal: Money
    interest_rate: Decimal  # Annual, e.g. 0.06 for 6%
    term_months: int
    currency: Currency
    monthly_payment: Money
    status: LoanStatus = LoanStatus.PENDING
    purpose: Optional[str] = None
    admin_notes: Optional[str] = None
    version: int = 0
    
    def recalculate_payment(self) -> None:
        """Re-derive the monthly payment from principal, rate and term"""
        self.monthly_payment = Money(
            monthly_payment(self.principal.amount, self.interest_rate, self.term_months, self.currency),
            self.currency
        )
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        currency = Currency[data['currency']]
        data['currency'] = currency
        data['status'] = LoanStatus(data['status'])
        data['principal'] = Money(Decimal(data['principal']), currency)
        data['monthly_payment'] = Money(Decimal(data['monthly_payment']), currency)
        data['interest_rate'] = Decimal(data['interest_rate'])
        return super().from_dict(data)


def new_loan(loan_id: str, now: datetime, owner_id: str, principal: Decimal,
             interest_rate: Decimal, term_months: int, currency: Currency,
             purpose: Optional[str] = None) -> Loan:
    """Build a PENDING loan with its monthly payment computed"""
    loan = Loan(
        id=loan_id,
        created_at=now,
        updated_at=now,
        owner_id=owner_id,
        principal=Money(principal, currency),
        interest_rate=interest_rate,
        term_months=term_months,
        currency=currency,
        monthly_payment=Money.zero(currency),
        purpose=purpose or None
    )
    loan.recalculate_payment()
    return loan


NUMERIC_TERMS = frozenset({'principal', 'interest_rate', 'term_months'})


def apply_loan_patch(loan: Loan, changes: Dict[str, Any]) -> None:
    """Apply validated patch fields; numeric term edits re-run the calculator"""
    if 'principal' in changes:
        loan.principal = Money(changes['principal'], loan.currency)
    if 'interest_rate' in changes:
        loan.interest_rate = changes['interest_rate']
    if 'term_months' in changes:
        loan.term_months = changes['term_months']
    if 'purpose' in changes:
        loan.purpose = changes['purpose'] or None
    if 'admin_notes' in changes:
        loan.admin_notes = changes['admin_notes'] or None
    
    if NUMERIC_TERMS & set(changes):
        loan.recalculate_payment()
