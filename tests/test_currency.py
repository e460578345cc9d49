"""
Tests for the Money value type
"""

from decimal import Decimal

import pytest

from bankcore.currency import Currency, Money, parse_currency


class TestMoney:

    def test_quantizes_half_up(self):
        """Test amounts are rounded half up to the minor unit"""
        assert Money(Decimal('10.005'), Currency.USD).amount == Decimal('10.01')
        assert Money(Decimal('10.004'), Currency.USD).amount == Decimal('10.00')

    def test_accepts_strings_and_ints(self):
        """Test non-Decimal amounts are converted"""
        assert Money('12.5', Currency.EUR).amount == Decimal('12.50')
        assert Money(3, Currency.EUR).amount == Decimal('3.00')

    def test_arithmetic(self):
        """Test money arithmetic"""
        a = Money(Decimal('100.00'), Currency.USD)
        b = Money(Decimal('30.25'), Currency.USD)

        assert a + b == Money(Decimal('130.25'), Currency.USD)
        assert a - b == Money(Decimal('69.75'), Currency.USD)
        assert b * 2 == Money(Decimal('60.50'), Currency.USD)
        assert -b == Money(Decimal('-30.25'), Currency.USD)

    def test_currency_mismatch(self):
        """Test mixing currencies raises"""
        usd = Money(Decimal('1'), Currency.USD)
        eur = Money(Decimal('1'), Currency.EUR)

        with pytest.raises(ValueError, match="Cannot add USD and EUR"):
            usd + eur
        with pytest.raises(ValueError, match="Cannot compare"):
            usd < eur
        assert usd != eur

    def test_predicates(self):
        """Test zero, positive and negative checks"""
        assert Money.zero(Currency.GBP).is_zero()
        assert Money('0.01', Currency.GBP).is_positive()
        assert Money('-0.01', Currency.GBP).is_negative()

    def test_dict_form(self):
        """Test conversion to and from the storage dictionary"""
        money = Money(Decimal('1234.5'), Currency.INR)

        assert money.to_dict() == {'amount': '1234.50', 'currency': 'INR'}
        assert Money.from_dict(money.to_dict()) == money

    def test_display(self):
        """Test string formatting"""
        assert str(Money(Decimal('1234567.891'), Currency.USD)) == "USD 1,234,567.89"


def test_parse_currency():
    """Test currency code lookup"""
    assert parse_currency("chf") == Currency.CHF
    with pytest.raises(ValueError, match="Unsupported currency: XYZ"):
        parse_currency("XYZ")
