"""
Loan Terms Calculator

Computes the amortized (equal installment) monthly payment of a loan and its
repayment schedule. Pure functions over Decimal; nothing here touches storage.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import List, Optional

from .currency import Currency, Money


# Below this n*r the binomial expansion of (1+r)^n - 1 converges in a handful of terms
_SERIES_THRESHOLD = Decimal('0.05')
_WORKING_PRECISION = 50


@dataclass
class AmortizationEntry:
    """Single entry in amortization schedule"""
    payment_number: int
    payment_date: Optional[date]
    payment_amount: Money
    principal_amount: Money
    interest_amount: Money
    remaining_balance: Money
    
    def __post_init__(self):
        calculated_payment = self.principal_amount + self.interest_amount
        if calculated_payment != self.payment_amount:
            raise ValueError(f"Payment amount {self.payment_amount.to_string()} does not equal "
                             f"principal {self.principal_amount.to_string()} + "
                             f"interest {self.interest_amount.to_string()}")


def _growth_minus_one(rate: Decimal, periods: int) -> Decimal:
    """
    Compute (1 + rate)^periods - 1 without catastrophic cancellation.
    
    For small rate*periods the leading 1 would swallow most significant
    digits, so the value is summed directly as sum_k C(n, k) r^k instead.
    """
    if rate * periods >= _SERIES_THRESHOLD:
        return (Decimal(1) + rate) ** periods - Decimal(1)
    
    epsilon = Decimal(10) ** -(_WORKING_PRECISION - 5)
    term = rate * periods
    total = term
    k = 1
    while k < periods:
        term = term * (periods - k) * rate / (k + 1)
        if abs(term) < epsilon * abs(total):
            break
        total += term
        k += 1
    return total


def monthly_payment(principal: Decimal, annual_rate: Decimal, term_months: int,
                    currency: Currency = Currency.EUR) -> Decimal:
    """
    Amortized monthly payment, rounded half-up to the currency minor unit
    
    Args:
        principal: Amount borrowed
        annual_rate: Annual interest rate as a fraction (0.06 for 6%)
        term_months: Number of monthly payments
        currency: Currency whose precision the result is rounded to
        
    Returns:
        Payment per month
    """
    principal = Decimal(str(principal))
    annual_rate = Decimal(str(annual_rate))
    if term_months < 1:
        raise ValueError("term_months must be at least 1")
    if principal < 0 or annual_rate < 0:
        raise ValueError("principal and annual_rate must not be negative")
    
    with localcontext() as ctx:
        ctx.prec = _WORKING_PRECISION
        if annual_rate == 0:
            payment = principal / Decimal(term_months)
        else:
            r = annual_rate / Decimal(12)
            growth = _growth_minus_one(r, term_months)
            # P * r * (1+r)^n / ((1+r)^n - 1)
            payment = principal * r * (growth + Decimal(1)) / growth
    
    return payment.quantize(currency.minor_unit, rounding=ROUND_HALF_UP)


def _add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def amortization_schedule(principal: Decimal, annual_rate: Decimal, term_months: int,
                          currency: Currency = Currency.EUR,
                          first_payment_date: Optional[date] = None) -> List[AmortizationEntry]:
    """
    Generate the equal installment repayment schedule.
    
    Interest accrues on the remaining balance each month; the final payment
    is adjusted so the remaining balance ends at exactly zero.
    """
    payment = Money(monthly_payment(principal, annual_rate, term_months, currency), currency)
    remaining = Money(Decimal(str(principal)), currency)
    periodic_rate = Decimal(str(annual_rate)) / Decimal(12)
    
    schedule = []
    for payment_number in range(1, term_months + 1):
        interest = remaining * periodic_rate
        
        if payment_number == term_months or payment - interest > remaining:
            principal_part = remaining
        else:
            principal_part = payment - interest
        
        remaining = remaining - principal_part
        payment_date = None
        if first_payment_date:
            payment_date = _add_months(first_payment_date, payment_number - 1)
        
        schedule.append(AmortizationEntry(
            payment_number=payment_number,
            payment_date=payment_date,
            payment_amount=principal_part + interest,
            principal_amount=principal_part,
            interest_amount=interest,
            remaining_balance=remaining
        ))
        
        if remaining.is_zero():
            break
    
    return schedule
