"""
Decimal and Money Calculation Utilities
========================================

Provides consistent rounding and money calculations across the fund:
- Deposit unit arithmetic
- Pre-installment compound interest
- Reducing balance (EMI) amortization schedules
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR

from dateutil.relativedelta import relativedelta


# Days per month used by the pre-installment interest formula, whatever the
# real calendar month length.
DAYS_PER_INTEREST_MONTH = 30


class MoneyCalculator:
    """
    Consistent money calculations with proper rounding

    Usage:
        total = MoneyCalculator.round_money(123.456)  # 123.46
        cap = MoneyCalculator.calculate_percentage(50000, '0.40')  # 20000.00
    """

    # Rounding precision constants
    TWO_PLACES = Decimal('0.01')
    FOUR_PLACES = Decimal('0.0001')

    @staticmethod
    def round_money(amount, places=None, rounding=ROUND_HALF_UP):
        """
        Round amount to specified decimal places

        Args:
            amount: Amount to round (can be Decimal, int, float, str)
            places: Decimal precision (default: 2 places)
            rounding: Rounding mode (default: ROUND_HALF_UP)

        Returns:
            Decimal: Rounded amount
        """
        if amount is None:
            return Decimal('0.00')

        if places is None:
            places = MoneyCalculator.TWO_PLACES

        return Decimal(str(amount)).quantize(places, rounding=rounding)

    @staticmethod
    def calculate_percentage(amount, rate, places=None):
        """
        Calculate a fraction of an amount

        Args:
            amount: Base amount
            rate: Fraction (e.g., 0.40 for 40%)
            places: Decimal precision (default: 2 places)

        Example:
            >>> MoneyCalculator.calculate_percentage(50000, '0.40')
            Decimal('20000.00')
        """
        if not amount or not rate:
            return Decimal('0.00')

        result = Decimal(str(amount)) * Decimal(str(rate))
        return MoneyCalculator.round_money(result, places)

    @staticmethod
    def safe_divide(numerator, denominator, default=Decimal('0.00'), places=None):
        """
        Safe division with zero-handling

        Args:
            numerator: Number to divide
            denominator: Divisor
            default: Return value if denominator is zero
            places: Decimal precision

        Returns:
            Decimal: Result or default if denominator is zero
        """
        if not denominator or Decimal(str(denominator)) == 0:
            return default

        result = Decimal(str(numerator)) / Decimal(str(denominator))
        return MoneyCalculator.round_money(result, places)

    @staticmethod
    def is_multiple_of(amount, unit):
        """True when amount is a whole number of deposit units"""
        unit = Decimal(str(unit))
        if unit <= 0:
            return False
        return Decimal(str(amount)) % unit == 0

    @staticmethod
    def units_in(amount, unit):
        """Whole deposit units contained in an amount (floored)"""
        unit = Decimal(str(unit))
        if unit <= 0:
            return 0
        return int((Decimal(str(amount)) / unit).to_integral_value(rounding=ROUND_FLOOR))

    @staticmethod
    def calculate_emi(principal, rate, periods):
        """
        Calculate Equal Monthly Installment (EMI)

        Formula: P × r × (1+r)^n / ((1+r)^n - 1)

        Args:
            principal: Loan principal
            rate: Interest rate per period (monthly fraction)
            periods: Number of periods

        Returns:
            Decimal: EMI amount
        """
        if not rate or Decimal(str(rate)) == 0:
            # If no interest, just divide principal by periods
            return MoneyCalculator.safe_divide(principal, periods)

        principal = Decimal(str(principal))
        rate = Decimal(str(rate))
        periods = int(periods)

        # EMI formula
        factor = (1 + rate) ** periods
        emi = principal * rate * factor / (factor - 1)

        return MoneyCalculator.round_money(emi)

    @staticmethod
    def format_currency(amount, symbol='₹'):
        """
        Format amount as currency string

        Example:
            >>> MoneyCalculator.format_currency(1234567.89)
            '₹1,234,567.89'
        """
        amount = MoneyCalculator.round_money(amount)
        return f"{symbol}{amount:,.2f}"


class InterestCalculator:
    """
    Specialized interest calculations for fund loans

    Rates are annual percentages (9.5 means 9.5% a year).
    """

    @staticmethod
    def monthly_rate(annual_rate):
        """Annual percentage → monthly fraction (10 → 0.008333...)"""
        return Decimal(str(annual_rate)) / Decimal('100') / Decimal('12')

    @staticmethod
    def calculate_pre_installment_total(principal, annual_rate, days):
        """
        Principal plus compound interest over a pre-installment gap

        Formula: P × (1 + rate/100/12) ^ (days/30)

        Not rounded; see calculate_pre_installment_interest.
        """
        principal = Decimal(str(principal))
        base = 1 + InterestCalculator.monthly_rate(annual_rate)
        periods = Decimal(int(days)) / Decimal(DAYS_PER_INTEREST_MONTH)
        return principal * (base ** periods)

    @staticmethod
    def calculate_pre_installment_interest(principal, annual_rate, days):
        """
        Interest accrued between disbursement and the first installment

        Args:
            principal: Loan principal
            annual_rate: Annual rate as a percentage
            days: Days between disbursement and installment start

        Returns:
            Decimal: Interest rounded to 2 places

        Example:
            >>> InterestCalculator.calculate_pre_installment_interest(7000, '9.5', 45)
            Decimal('83.29')
        """
        if int(days) <= 0:
            return Decimal('0.00')

        principal = Decimal(str(principal))
        total = InterestCalculator.calculate_pre_installment_total(principal, annual_rate, days)
        return MoneyCalculator.round_money(total - principal)

    @staticmethod
    def calculate_reducing_balance_interest(principal, annual_rate, months):
        """
        Summary figures for a reducing balance loan

        Returns:
            dict: emi, total interest and total repayment
        """
        principal = Decimal(str(principal))
        monthly_rate = InterestCalculator.monthly_rate(annual_rate)
        emi = MoneyCalculator.calculate_emi(principal, monthly_rate, months)

        schedule = InterestCalculator.generate_amortization_schedule(
            principal, annual_rate, months, start_date=None
        )
        total_interest = sum((row['interest_component'] for row in schedule), Decimal('0.00'))

        return {
            'principal': principal,
            'emi': emi,
            'total_interest': MoneyCalculator.round_money(total_interest),
            'total_repayment': MoneyCalculator.round_money(principal + total_interest),
            'months': months,
            'monthly_rate': monthly_rate,
        }

    @staticmethod
    def generate_amortization_schedule(principal, annual_rate, months, start_date):
        """
        Generate a reducing balance amortization schedule

        The final installment takes whatever principal is left, so the
        principal components always add up to the loan principal and the
        balance ends at exactly zero. A balance that is repaid early leaves
        the remaining rows at zero.

        Args:
            principal: Outstanding principal to amortize
            annual_rate: Annual rate as a percentage
            months: Number of monthly installments
            start_date: Installment start; installment i is due i months later
                        (None skips due dates, for summary calculations)

        Returns:
            list: Schedule rows as dicts
        """
        months = int(months)
        principal = MoneyCalculator.round_money(principal)
        monthly_rate = InterestCalculator.monthly_rate(annual_rate)
        emi = MoneyCalculator.calculate_emi(principal, monthly_rate, months)

        balance = principal
        schedule = []

        for month in range(1, months + 1):
            interest_component = MoneyCalculator.round_money(balance * monthly_rate)

            if month == months:
                principal_component = balance
            else:
                # Rounded EMI can outrun a tiny balance; never repay past zero
                principal_component = min(
                    max(MoneyCalculator.round_money(emi - interest_component), Decimal('0.00')),
                    balance,
                )

            balance = MoneyCalculator.round_money(balance - principal_component)
            if month == months:
                balance = Decimal('0.00')

            schedule.append({
                'installment_number': month,
                'due_date': start_date + relativedelta(months=month) if start_date else None,
                'principal_component': principal_component,
                'interest_component': interest_component,
                'total_amount': principal_component + interest_component,
                'outstanding_after': balance,
            })

        return schedule


# Quick access functions
def round_money(amount, places=None):
    """Shortcut for MoneyCalculator.round_money"""
    return MoneyCalculator.round_money(amount, places)


def format_currency(amount):
    """Shortcut for MoneyCalculator.format_currency"""
    return MoneyCalculator.format_currency(amount)
