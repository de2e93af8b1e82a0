"""
Tests for the loan calculation engine

French amortization payments, totals, CAT, schedule rounding and input validation.
"""

import pytest
from datetime import date
from decimal import Decimal

from origination.calculator import (
    LoanCalculator, PaymentFrequency, add_months, payment_date_for
)
from origination.exceptions import ConvergenceFailureError, InvalidCalculationInputError


@pytest.fixture
def calculator():
    return LoanCalculator(max_payments=1000, cat_tolerance=Decimal("1e-10"), cat_max_iterations=100)


class TestPaymentFrequency:
    """Test frequency lookup and labels"""

    @pytest.mark.parametrize("value,expected", [
        ("WEEKLY", PaymentFrequency.WEEKLY),
        ("biweekly", PaymentFrequency.BIWEEKLY),
        ("monthly", PaymentFrequency.MONTHLY),
        ("SEMANAL", PaymentFrequency.WEEKLY),
        ("quincenal", PaymentFrequency.BIWEEKLY),
        ("Mensual", PaymentFrequency.MONTHLY),
        (PaymentFrequency.MONTHLY, PaymentFrequency.MONTHLY),
    ])
    def test_normalize(self, value, expected):
        assert PaymentFrequency.normalize(value) == expected

    def test_unknown_frequency_rejected(self):
        with pytest.raises(InvalidCalculationInputError) as exc_info:
            PaymentFrequency.normalize("DAILY")
        assert exc_info.value.field == "payment_frequency"

    def test_payments_per_year_and_labels(self):
        assert PaymentFrequency.WEEKLY.payments_per_year == 52
        assert PaymentFrequency.BIWEEKLY.payments_per_year == 24
        assert PaymentFrequency.MONTHLY.payments_per_year == 12
        assert PaymentFrequency.WEEKLY.label == "Semanal"
        assert PaymentFrequency.BIWEEKLY.label == "Quincenal"
        assert PaymentFrequency.MONTHLY.label == "Mensual"


class TestBuildingBlocks:
    """Test payment count, periodic rate and payment formula"""

    @pytest.mark.parametrize("term,frequency,expected", [
        (12, PaymentFrequency.WEEKLY, 52),
        (6, PaymentFrequency.WEEKLY, 26),
        (3, PaymentFrequency.WEEKLY, 13),
        (1, PaymentFrequency.WEEKLY, 4),
        (12, PaymentFrequency.BIWEEKLY, 24),
        (36, PaymentFrequency.BIWEEKLY, 72),
        (24, PaymentFrequency.MONTHLY, 24),
    ])
    def test_number_of_payments(self, calculator, term, frequency, expected):
        assert calculator.number_of_payments(term, frequency) == expected

    def test_periodic_rate(self, calculator):
        assert calculator.periodic_rate(Decimal("24"), PaymentFrequency.MONTHLY) == Decimal("0.02")
        assert calculator.periodic_rate(Decimal("24"), PaymentFrequency.BIWEEKLY) == Decimal("0.01")
        assert calculator.periodic_rate(Decimal("52"), PaymentFrequency.WEEKLY) == Decimal("0.01")

    def test_zero_rate_payment_is_straight_line(self, calculator):
        assert calculator.payment(Decimal("10000"), Decimal("0"), 10) == Decimal("1000")


class TestSimulation:
    """Test full simulations"""

    @pytest.mark.parametrize("amount,rate,term,frequency,expected", [
        ("100000", "24", 12, "MONTHLY", Decimal("9455.96")),
        ("50000", "24", 6, "BIWEEKLY", Decimal("4442.44")),
        ("200000", "36", 24, "MONTHLY", Decimal("11809.48")),
    ])
    def test_french_amortization_payment(self, calculator, amount, rate, term, frequency, expected):
        """Payments match the annuity formula"""
        simulation = calculator.simulate(amount, term, frequency, rate)
        assert abs(simulation.periodic_payment - expected) <= Decimal("0.01")

    def test_reference_scenario(self, calculator):
        """50,000 over 12 months, monthly, 45% with 3% opening commission"""
        simulation = calculator.simulate(Decimal("50000"), 12, PaymentFrequency.MONTHLY,
                                         Decimal("45"), Decimal("3"))

        assert simulation.number_of_payments == 12
        assert Decimal("5250.60") <= simulation.periodic_payment <= Decimal("5250.62")
        assert simulation.opening_commission == Decimal("1500.00")
        assert simulation.net_amount == Decimal("48500.00")
        assert simulation.periodic_rate == Decimal("3.7500")
        assert simulation.amortization_schedule[-1].remaining_balance == Decimal("0.00")
        assert len(simulation.amortization_schedule) == 12

    def test_total_amount_is_payment_times_count(self, calculator):
        simulation = calculator.simulate("75000", 18, "BIWEEKLY", "38.5", "2")
        assert simulation.total_amount == simulation.periodic_payment * simulation.number_of_payments
        assert simulation.total_interest == simulation.total_amount - simulation.amount

    def test_higher_rate_increases_payment_and_interest(self, calculator):
        """Monotonic in the annual rate"""
        results = [
            calculator.simulate("50000", 24, "MONTHLY", rate)
            for rate in ("0", "10", "24", "45", "60", "99")
        ]
        for lower, higher in zip(results, results[1:]):
            assert higher.periodic_payment > lower.periodic_payment
            assert higher.total_interest > lower.total_interest

    def test_zero_rate_loan(self, calculator):
        simulation = calculator.simulate("10000", 10, "MONTHLY", "0")
        assert simulation.periodic_payment == Decimal("1000.00")
        assert simulation.total_amount == Decimal("10000.00")
        assert simulation.total_interest == Decimal("0.00")
        assert simulation.cat == Decimal("0")

    def test_zero_rate_with_commission_has_positive_cat(self, calculator):
        """The commission alone produces a cost"""
        simulation = calculator.simulate("10000", 12, "MONTHLY", "0", "5")
        assert simulation.cat > Decimal("0")

    def test_legacy_frequency_alias(self, calculator):
        simulation = calculator.simulate("50000", 6, "quincenal", "24")
        assert simulation.payment_frequency == PaymentFrequency.BIWEEKLY
        assert simulation.number_of_payments == 12

    def test_to_dict(self, calculator):
        data = calculator.simulate("100000", 12, "monthly", "24", "3").to_dict()

        assert data["payment_frequency"] == "MONTHLY"
        assert data["payment_frequency_label"] == "Mensual"
        assert data["number_of_payments"] == 12
        assert data["opening_commission"] == "3000.00"
        assert data["net_amount"] == "97000.00"
        assert data["periodic_rate"] == "2.0000"
        assert len(data["amortization_schedule"]) == 12
        assert data["amortization_schedule"][-1]["remaining_balance"] == "0.00"

    def test_to_dict_without_schedule(self, calculator):
        data = calculator.simulate("100000", 12, "MONTHLY", "24").to_dict(include_schedule=False)
        assert "amortization_schedule" not in data


class TestCAT:
    """Test Costo Anual Total"""

    def test_cat_without_commission_is_effective_annual_rate(self, calculator):
        """2% monthly compounds to 26.8242% a year"""
        simulation = calculator.simulate("100000", 12, "MONTHLY", "24")
        assert abs(simulation.cat - Decimal("26.8242")) <= Decimal("0.0010")

    def test_commission_raises_cat(self, calculator):
        without = calculator.simulate("100000", 12, "MONTHLY", "24")
        with_commission = calculator.simulate("100000", 12, "MONTHLY", "24", "3")

        assert with_commission.cat > without.cat
        assert Decimal("30") < with_commission.cat < Decimal("40")

    def test_cat_has_four_decimals(self, calculator):
        simulation = calculator.simulate("50000", 12, "MONTHLY", "45", "3")
        assert simulation.cat == simulation.cat.quantize(Decimal("0.0001"))

    def test_convergence_failure(self):
        """An iteration cap too small to converge is a service fault"""
        calculator = LoanCalculator(cat_max_iterations=1)
        with pytest.raises(ConvergenceFailureError) as exc_info:
            calculator.simulate("50000", 12, "MONTHLY", "45", "3")
        assert exc_info.value.iterations == 1
        assert exc_info.value.code == "CONVERGENCE_FAILURE"


class TestAmortizationSchedule:
    """Test schedule rows"""

    @pytest.mark.parametrize("amount,term,frequency,rate", [
        ("12000", 12, "MONTHLY", "24"),
        ("50000", 12, "MONTHLY", "45"),
        ("33333.33", 7, "WEEKLY", "57.3"),
        ("150000", 48, "BIWEEKLY", "19.99"),
        ("9999", 3, "MONTHLY", "0"),
    ])
    def test_principal_sums_to_amount_and_ends_at_zero(self, calculator, amount, term, frequency, rate):
        simulation = calculator.simulate(amount, term, frequency, rate)
        schedule = simulation.amortization_schedule

        assert sum(row.principal_portion for row in schedule) == Decimal(amount)
        assert schedule[-1].remaining_balance == Decimal("0.00")
        for row in schedule:
            assert row.payment == row.principal_portion + row.interest_portion

    def test_balance_decreases(self, calculator):
        schedule = calculator.simulate("50000", 24, "MONTHLY", "18").amortization_schedule
        previous = Decimal("50000")
        for row in schedule:
            assert row.remaining_balance < previous
            previous = row.remaining_balance

    def test_interest_shifts_to_principal(self, calculator):
        schedule = calculator.simulate("12000", 12, "MONTHLY", "24").amortization_schedule

        assert schedule[0].interest_portion == Decimal("240.00")
        assert schedule[0].interest_portion > schedule[-1].interest_portion
        assert schedule[0].principal_portion < schedule[-1].principal_portion
        assert [row.payment_number for row in schedule] == list(range(1, 13))

    def test_rows_stay_within_cents_of_the_payment(self, calculator):
        """Cumulative rounding moves a row by at most a couple of cents"""
        simulation = calculator.simulate("87500", 36, "MONTHLY", "41")
        for row in simulation.amortization_schedule:
            assert abs(row.payment - simulation.periodic_payment) <= Decimal("0.03")

    def test_no_dates_by_default(self, calculator):
        schedule = calculator.simulate("12000", 12, "MONTHLY", "24").amortization_schedule
        assert all(row.payment_date is None for row in schedule)

    def test_monthly_dates_clamp_to_month_end(self, calculator):
        schedule = calculator.simulate(
            "12000", 4, "MONTHLY", "24", first_payment_date=date(2026, 1, 31)
        ).amortization_schedule

        assert [row.payment_date for row in schedule] == [
            date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30)
        ]

    def test_weekly_and_biweekly_dates(self):
        start = date(2026, 1, 1)
        assert payment_date_for(start, PaymentFrequency.WEEKLY, 2) == date(2026, 1, 8)
        assert payment_date_for(start, PaymentFrequency.BIWEEKLY, 2) == date(2026, 1, 16)
        assert payment_date_for(start, PaymentFrequency.BIWEEKLY, 3) == date(2026, 1, 31)

    def test_add_months_leap_year(self):
        assert add_months(date(2028, 1, 31), 1) == date(2028, 2, 29)
        assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)


class TestValidation:
    """Test input validation before any computation"""

    @pytest.mark.parametrize("amount,term,rate,commission,field", [
        ("0", 12, "24", "0", "amount"),
        ("-100", 12, "24", "0", "amount"),
        ("1000", 0, "24", "0", "term_months"),
        ("1000", -3, "24", "0", "term_months"),
        ("1000", 12, "-1", "0", "annual_rate"),
        ("1000", 12, "24", "100", "opening_commission_rate"),
        ("1000", 12, "24", "-1", "opening_commission_rate"),
        ("abc", 12, "24", "0", "amount"),
    ])
    def test_invalid_inputs(self, calculator, amount, term, rate, commission, field):
        with pytest.raises(InvalidCalculationInputError) as exc_info:
            calculator.simulate(amount, term, "MONTHLY", rate, commission)
        assert exc_info.value.field == field
        assert exc_info.value.code == "INVALID_CALCULATION_INPUT"

    def test_payment_count_limit(self, calculator):
        """240 months weekly is 1040 payments"""
        with pytest.raises(InvalidCalculationInputError) as exc_info:
            calculator.simulate("50000", 240, "WEEKLY", "24")
        assert exc_info.value.field == "term_months"

    def test_limit_is_configurable(self):
        calculator = LoanCalculator(max_payments=24)
        calculator.simulate("50000", 24, "MONTHLY", "24")
        with pytest.raises(InvalidCalculationInputError):
            calculator.simulate("50000", 25, "MONTHLY", "24")
