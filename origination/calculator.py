"""
Loan Calculation Engine

French (constant payment) amortization: periodic payment, totals, opening
commission, CAT (Costo Anual Total) and the per-payment amortization schedule.
All math runs in full Decimal precision; money is rounded only on output.
"""

from decimal import Decimal, ROUND_HALF_UP, localcontext
from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import calendar

from .config import get_config
from .exceptions import InvalidCalculationInputError, ConvergenceFailureError
from .storage import to_storable


class PaymentFrequency(Enum):
    """Payment frequency options with payments per year and display label"""
    WEEKLY = ("WEEKLY", 52, "Semanal")
    BIWEEKLY = ("BIWEEKLY", 24, "Quincenal")  # twice a month, not every 14 days
    MONTHLY = ("MONTHLY", 12, "Mensual")

    def __init__(self, code: str, payments_per_year: int, label: str):
        self.code = code
        self.payments_per_year = payments_per_year
        self.label = label

    @classmethod
    def normalize(cls, value: Union[str, 'PaymentFrequency']) -> 'PaymentFrequency':
        """Resolve a frequency from its code, any casing, or a legacy Spanish alias"""
        if isinstance(value, cls):
            return value
        key = str(value).strip().upper()
        key = LEGACY_FREQUENCY_ALIASES.get(key, key)
        try:
            return cls[key]
        except KeyError:
            raise InvalidCalculationInputError(
                "payment_frequency", f"Unsupported payment frequency: {value}"
            ) from None


LEGACY_FREQUENCY_ALIASES = {
    "SEMANAL": "WEEKLY",
    "QUINCENAL": "BIWEEKLY",
    "MENSUAL": "MONTHLY",
}


def _round_money(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _round_rate(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def payment_date_for(first_payment_date: date, frequency: PaymentFrequency, payment_number: int) -> date:
    """Due date of the n-th payment counted from the first one"""
    offset = payment_number - 1
    if frequency == PaymentFrequency.WEEKLY:
        return first_payment_date + timedelta(days=7 * offset)
    if frequency == PaymentFrequency.BIWEEKLY:
        return first_payment_date + timedelta(days=15 * offset)
    return add_months(first_payment_date, offset)


@dataclass
class AmortizationRow:
    """One installment of the amortization schedule"""
    payment_number: int
    payment: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    remaining_balance: Decimal
    payment_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'payment_number': self.payment_number,
            'payment': self.payment,
            'principal_portion': self.principal_portion,
            'interest_portion': self.interest_portion,
            'remaining_balance': self.remaining_balance,
        }
        if self.payment_date is not None:
            data['payment_date'] = self.payment_date
        return to_storable(data)


@dataclass
class LoanSimulation:
    """Inputs and outputs of one simulation; never persisted"""
    amount: Decimal
    term_months: int
    payment_frequency: PaymentFrequency
    annual_rate: Decimal
    opening_commission_rate: Decimal
    periodic_rate: Decimal          # percent per period, 4 dp
    number_of_payments: int
    periodic_payment: Decimal
    total_amount: Decimal
    total_interest: Decimal
    opening_commission: Decimal
    net_amount: Decimal
    cat: Decimal                    # percent, 4 dp
    amortization_schedule: List[AmortizationRow] = field(default_factory=list)

    def to_dict(self, include_schedule: bool = True) -> Dict[str, Any]:
        data = {
            'amount': self.amount,
            'term_months': self.term_months,
            'payment_frequency': self.payment_frequency.code,
            'payment_frequency_label': self.payment_frequency.label,
            'annual_rate': self.annual_rate,
            'opening_commission_rate': self.opening_commission_rate,
            'periodic_rate': self.periodic_rate,
            'number_of_payments': self.number_of_payments,
            'periodic_payment': self.periodic_payment,
            'total_amount': self.total_amount,
            'total_interest': self.total_interest,
            'opening_commission': self.opening_commission,
            'net_amount': self.net_amount,
            'cat': self.cat,
        }
        data = to_storable(data)
        if include_schedule:
            data['amortization_schedule'] = [row.to_dict() for row in self.amortization_schedule]
        return data


class LoanCalculator:
    """
    Stateless loan calculation engine

    Limits (payment cap, CAT tolerance and iteration bound) come from the
    configuration unless given explicitly.
    """

    def __init__(
        self,
        max_payments: Optional[int] = None,
        cat_tolerance: Optional[Decimal] = None,
        cat_max_iterations: Optional[int] = None
    ):
        settings = get_config()
        self.max_payments = max_payments if max_payments is not None else settings.max_payments
        self.cat_tolerance = Decimal(str(cat_tolerance if cat_tolerance is not None else settings.cat_tolerance))
        self.cat_max_iterations = (
            cat_max_iterations if cat_max_iterations is not None else settings.cat_max_iterations
        )

    def number_of_payments(self, term_months: int, frequency: PaymentFrequency) -> int:
        """round(term x payments_per_year / 12), half up"""
        frequency = PaymentFrequency.normalize(frequency)
        exact = Decimal(term_months * frequency.payments_per_year) / Decimal(12)
        return int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def periodic_rate(self, annual_rate: Decimal, frequency: PaymentFrequency) -> Decimal:
        """Periodic rate as a fraction"""
        frequency = PaymentFrequency.normalize(frequency)
        return Decimal(str(annual_rate)) / Decimal(100) / Decimal(frequency.payments_per_year)

    def payment(self, amount: Decimal, periodic_rate: Decimal, number_of_payments: int) -> Decimal:
        """Unrounded constant payment (annuity formula, straight line when the rate is zero)"""
        if periodic_rate == 0:
            return amount / Decimal(number_of_payments)
        discount = (Decimal(1) + periodic_rate) ** -number_of_payments
        return amount * periodic_rate / (Decimal(1) - discount)

    def simulate(
        self,
        amount: Union[Decimal, int, str],
        term_months: int,
        payment_frequency: Union[PaymentFrequency, str],
        annual_rate: Union[Decimal, int, str],
        opening_commission_rate: Union[Decimal, int, str] = Decimal("0"),
        first_payment_date: Optional[date] = None
    ) -> LoanSimulation:
        """
        Run a full loan simulation

        Args:
            amount: Principal requested
            term_months: Loan term in months
            payment_frequency: WEEKLY, BIWEEKLY or MONTHLY (legacy aliases accepted)
            annual_rate: Annual nominal rate in percent, e.g. 45 for 45%
            opening_commission_rate: One-time commission in percent of the amount
            first_payment_date: When given, every schedule row carries its due date

        Returns:
            LoanSimulation with totals, CAT and amortization schedule

        Raises:
            InvalidCalculationInputError: Non-positive amount or term, negative rate,
                commission outside [0, 100) or too many payments
            ConvergenceFailureError: CAT root-find did not converge
        """
        amount = self._to_decimal("amount", amount)
        annual_rate = self._to_decimal("annual_rate", annual_rate)
        commission_rate = self._to_decimal("opening_commission_rate", opening_commission_rate)
        frequency = PaymentFrequency.normalize(payment_frequency)
        self._validate(amount, term_months, annual_rate, commission_rate)

        n = self.number_of_payments(term_months, frequency)
        if n > self.max_payments:
            raise InvalidCalculationInputError(
                "term_months",
                f"{term_months} months at {frequency.code} gives {n} payments, above the limit of {self.max_payments}"
            )

        rate = self.periodic_rate(annual_rate, frequency)
        exact_payment = self.payment(amount, rate, n)

        periodic_payment = _round_money(exact_payment)
        total_amount = periodic_payment * n
        opening_commission = _round_money(amount * commission_rate / Decimal(100))
        net_amount = amount - opening_commission

        cat = self.calculate_cat(net_amount, exact_payment, n, frequency)
        schedule = self.amortization_schedule(amount, rate, n, exact_payment, frequency, first_payment_date)

        return LoanSimulation(
            amount=amount,
            term_months=term_months,
            payment_frequency=frequency,
            annual_rate=annual_rate,
            opening_commission_rate=commission_rate,
            periodic_rate=_round_rate(rate * Decimal(100)),
            number_of_payments=n,
            periodic_payment=periodic_payment,
            total_amount=total_amount,
            total_interest=total_amount - amount,
            opening_commission=opening_commission,
            net_amount=net_amount,
            cat=cat,
            amortization_schedule=schedule,
        )

    def amortization_schedule(
        self,
        amount: Decimal,
        periodic_rate: Decimal,
        number_of_payments: int,
        exact_payment: Decimal,
        frequency: PaymentFrequency,
        first_payment_date: Optional[date] = None
    ) -> List[AmortizationRow]:
        """
        Build the schedule in full precision and round each row from cumulative
        totals, so principal portions add up to the amount to the cent and the
        last remaining balance is exactly zero.
        """
        rows = []
        balance = amount
        cumulative_principal = Decimal(0)
        cumulative_interest = Decimal(0)
        reported_principal = Decimal(0)
        reported_interest = Decimal(0)

        for payment_number in range(1, number_of_payments + 1):
            interest = balance * periodic_rate
            principal = exact_payment - interest
            if payment_number == number_of_payments:
                principal = balance
            balance -= principal
            cumulative_principal += principal
            cumulative_interest += interest

            if payment_number == number_of_payments:
                principal_out = amount - reported_principal
            else:
                principal_out = _round_money(cumulative_principal) - reported_principal
            interest_out = _round_money(cumulative_interest) - reported_interest
            reported_principal += principal_out
            reported_interest += interest_out

            rows.append(AmortizationRow(
                payment_number=payment_number,
                payment=principal_out + interest_out,
                principal_portion=principal_out,
                interest_portion=interest_out,
                remaining_balance=_round_money(amount - reported_principal),
                payment_date=(
                    payment_date_for(first_payment_date, frequency, payment_number)
                    if first_payment_date else None
                ),
            ))

        return rows

    def calculate_cat(
        self,
        net_amount: Decimal,
        payment: Decimal,
        number_of_payments: int,
        frequency: PaymentFrequency
    ) -> Decimal:
        """
        CAT in percent: the periodic rate that discounts the payment stream to
        the net disbursed amount, annualized as (1 + i)^payments_per_year - 1.
        """
        if payment * number_of_payments <= net_amount:
            return _round_rate(Decimal(0))

        periodic = self._solve_periodic_irr(net_amount, payment, number_of_payments)
        annual = (Decimal(1) + periodic) ** frequency.payments_per_year - Decimal(1)
        return _round_rate(annual * Decimal(100))

    def _solve_periodic_irr(self, net_amount: Decimal, payment: Decimal, n: int) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = 40

            def npv(rate: Decimal) -> Decimal:
                if rate == 0:
                    return payment * n - net_amount
                discount = (Decimal(1) + rate) ** -n
                return payment * (Decimal(1) - discount) / rate - net_amount

            def npv_slope(rate: Decimal) -> Decimal:
                growth = Decimal(1) + rate
                discount = growth ** -n
                return payment * (n * discount / growth * rate - (Decimal(1) - discount)) / (rate * rate)

            # Newton-Raphson from a guess above zero; npv is decreasing and convex for rate > 0
            rate = Decimal("0.01")
            iterations = 0
            while iterations < self.cat_max_iterations:
                iterations += 1
                slope = npv_slope(rate)
                if slope == 0:
                    break
                step = npv(rate) / slope
                candidate = rate - step
                if candidate <= 0:
                    break
                rate = candidate
                if abs(step) < self.cat_tolerance:
                    return rate

            # Bisection fallback on a bracket that holds the root
            low, high = Decimal(0), Decimal(1)
            while npv(high) > 0 and iterations < self.cat_max_iterations:
                iterations += 1
                low, high = high, high * 2
            while iterations < self.cat_max_iterations:
                iterations += 1
                middle = (low + high) / 2
                if npv(middle) > 0:
                    low = middle
                else:
                    high = middle
                if high - low < self.cat_tolerance:
                    return (low + high) / 2

            raise ConvergenceFailureError(iterations, rate)

    def _to_decimal(self, field_name: str, value: Any) -> Decimal:
        try:
            return value if isinstance(value, Decimal) else Decimal(str(value))
        except ArithmeticError:
            raise InvalidCalculationInputError(field_name, f"{field_name} must be numeric") from None

    def _validate(self, amount: Decimal, term_months: int, annual_rate: Decimal, commission_rate: Decimal) -> None:
        if not amount.is_finite() or amount <= 0:
            raise InvalidCalculationInputError("amount", "Amount must be greater than zero")
        if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months <= 0:
            raise InvalidCalculationInputError("term_months", "Term must be a positive number of months")
        if not annual_rate.is_finite() or annual_rate < 0:
            raise InvalidCalculationInputError("annual_rate", "Annual rate cannot be negative")
        if not commission_rate.is_finite() or commission_rate < 0 or commission_rate >= 100:
            raise InvalidCalculationInputError(
                "opening_commission_rate", "Opening commission rate must be between 0 and 100"
            )
