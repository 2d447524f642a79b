#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from utils.escrow_errors import InvalidArgument

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

# Largest value a Numeric(12, 2) column can hold
MAX_STORABLE_AMOUNT = Decimal("9999999999.99")


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    PRECISION = Decimal("0.01")  # 2 decimal places, single currency

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal], context: str = "amount") -> Decimal:
        """Convert any numeric value to Decimal, rejecting values that are not finite numbers"""
        if value is None or isinstance(value, bool):
            raise InvalidArgument(f"{context} is required", error_code="invalid_amount")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert via str to avoid binary float artifacts
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError):
                raise InvalidArgument(f"{context} is not a number: {value!r}", error_code="invalid_amount")

        if not decimal_value.is_finite():
            raise InvalidArgument(f"{context} must be finite", error_code="invalid_amount")

        return decimal_value

    @classmethod
    def quantize(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize amount to 2 decimal places"""
        return cls.to_decimal(amount).quantize(cls.PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def parse_amount(cls, value: Union[str, int, float, Decimal]) -> Decimal:
        """
        Parse a transaction amount.

        The amount must be strictly positive and carry at most 2 fraction digits;
        silently rounding 10.005 to 10.01 would move money the user did not ask for.
        """
        amount = cls.to_decimal(value)

        if amount <= 0:
            raise InvalidArgument(f"amount must be positive, got {amount}", error_code="invalid_amount")

        if amount != amount.quantize(cls.PRECISION):
            raise InvalidArgument(
                f"amount supports at most 2 decimal places, got {amount}", error_code="invalid_amount"
            )

        if amount > MAX_STORABLE_AMOUNT:
            raise InvalidArgument(f"amount {amount} exceeds storable range", error_code="invalid_amount")

        return amount.quantize(cls.PRECISION)

    @staticmethod
    def format(amount: Decimal) -> str:
        """Format a 2-place amount for display, e.g. 1,500.00"""
        return f"{MonetaryDecimal.quantize(amount):,.2f}"
