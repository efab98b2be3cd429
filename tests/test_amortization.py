"""
Test suite for the Loan Terms Calculator

Covers the amortized payment formula, the zero-rate case, the small-rate
series expansion and the repayment schedule.
"""

import pytest
from decimal import Decimal, ROUND_HALF_UP, localcontext
from datetime import date

from bank_engine.currency import Money, Currency
from bank_engine.amortization import (
    monthly_payment, amortization_schedule, AmortizationEntry
)


class TestMonthlyPayment:
    """Test monthly payment calculation"""
    
    def test_standard_loan(self):
        """10,000 at 6% over 60 months pays 193.33 a month"""
        payment = monthly_payment(Decimal('10000'), Decimal('0.06'), 60)
        assert payment == Decimal('193.33')
    
    def test_zero_rate_is_straight_division(self):
        """Zero interest divides the principal evenly"""
        payment = monthly_payment(Decimal('1200'), Decimal('0'), 12)
        assert payment == Decimal('100.00')
        assert str(payment) == "100.00"
    
    def test_single_month_term(self):
        """One payment repays principal plus one month of interest"""
        payment = monthly_payment(Decimal('1000'), Decimal('0.12'), 1)
        assert payment == Decimal('1010.00')
    
    def test_tiny_rate_close_to_zero_rate_payment(self):
        """A vanishing rate converges on principal / term instead of blowing up"""
        payment = monthly_payment(Decimal('1200'), Decimal('0.000000001'), 12)
        assert payment == Decimal('100.00')
    
    def test_small_rate_long_term(self):
        """Small rates use the series expansion and still match the closed form"""
        principal, rate, term = Decimal('100000'), Decimal('0.001'), 360
        
        with localcontext() as ctx:
            ctx.prec = 80
            r = rate / 12
            growth = (1 + r) ** term
            expected = principal * r * growth / (growth - 1)
        expected = expected.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        
        assert monthly_payment(principal, rate, term) == expected
    
    def test_maximum_bounds(self):
        """Largest allowed loan at the highest rate and longest term"""
        payment = monthly_payment(Decimal('100000'), Decimal('0.25'), 360)
        # Just above the interest-only payment of 2083.33
        assert Decimal('2083.33') < payment < Decimal('2090')
    
    def test_rounds_to_currency_precision(self):
        """Payments are rounded to the currency's minor unit"""
        payment = monthly_payment(Decimal('10000'), Decimal('0.06'), 60, Currency.JPY)
        assert payment == Decimal('193')
        assert payment.as_tuple().exponent == 0
    
    def test_rounding_half_up(self):
        """A payment ending in exactly half a cent rounds up"""
        payment = monthly_payment(Decimal('100.05'), Decimal('0'), 2)
        assert payment == Decimal('50.03')
    
    def test_invalid_term(self):
        """Terms shorter than one month are rejected"""
        with pytest.raises(ValueError):
            monthly_payment(Decimal('1000'), Decimal('0.05'), 0)
    
    def test_negative_rate(self):
        with pytest.raises(ValueError):
            monthly_payment(Decimal('1000'), Decimal('-0.01'), 12)


class TestAmortizationSchedule:
    """Test repayment schedule generation"""
    
    def test_schedule_repays_principal_exactly(self):
        """Principal portions sum to the principal and the last balance is zero"""
        schedule = amortization_schedule(Decimal('10000'), Decimal('0.06'), 60)
        
        assert len(schedule) == 60
        assert schedule[-1].remaining_balance.is_zero()
        
        total_principal = sum((entry.principal_amount.amount for entry in schedule), Decimal('0'))
        assert total_principal == Decimal('10000.00')
    
    def test_regular_payments_match_monthly_payment(self):
        """Every payment but the last equals the computed monthly payment"""
        schedule = amortization_schedule(Decimal('10000'), Decimal('0.06'), 60)
        expected = Money(Decimal('193.33'), Currency.EUR)
        
        for entry in schedule[:-1]:
            assert entry.payment_amount == expected
        
        # Final payment absorbs the rounding drift
        assert abs(schedule[-1].payment_amount.amount - expected.amount) < Decimal('1.00')
    
    def test_first_entry_interest(self):
        """First month's interest is balance times the monthly rate"""
        schedule = amortization_schedule(Decimal('10000'), Decimal('0.06'), 60)
        first = schedule[0]
        
        assert first.payment_number == 1
        assert first.interest_amount == Money(Decimal('50.00'), Currency.EUR)
        assert first.principal_amount == Money(Decimal('143.33'), Currency.EUR)
        assert first.remaining_balance == Money(Decimal('9856.67'), Currency.EUR)
    
    def test_zero_rate_schedule(self):
        """Zero-rate schedules carry no interest"""
        schedule = amortization_schedule(Decimal('1200'), Decimal('0'), 12)
        
        assert len(schedule) == 12
        for entry in schedule:
            assert entry.interest_amount.is_zero()
            assert entry.payment_amount == Money(Decimal('100.00'), Currency.EUR)
    
    def test_payment_dates_clamp_to_month_end(self):
        """A schedule starting on the 31st falls back to shorter month ends"""
        schedule = amortization_schedule(
            Decimal('1200'), Decimal('0'), 3, first_payment_date=date(2025, 1, 31)
        )
        
        assert [entry.payment_date for entry in schedule] == [
            date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31)
        ]
    
    def test_no_dates_without_first_payment_date(self):
        schedule = amortization_schedule(Decimal('1200'), Decimal('0.05'), 12)
        assert all(entry.payment_date is None for entry in schedule)
    
    def test_entry_validates_components(self):
        """An entry whose parts do not add up is rejected"""
        with pytest.raises(ValueError):
            AmortizationEntry(
                payment_number=1,
                payment_date=None,
                payment_amount=Money(Decimal('100.00'), Currency.EUR),
                principal_amount=Money(Decimal('60.00'), Currency.EUR),
                interest_amount=Money(Decimal('30.00'), Currency.EUR),
                remaining_balance=Money(Decimal('0.00'), Currency.EUR)
            )
