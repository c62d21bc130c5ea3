"""
Fixed-Point Conversion

Exact conversion between the 18-decimal integers used on-chain and the
Decimal values used for price math. No float ever enters the pipeline.
"""

from decimal import Decimal, InvalidOperation, localcontext
from typing import Union

from dataflow.errors import MalformedNumericInput

DEFAULT_DECIMALS = 18

# Enough digits for a uint256 plus 18 fractional places
_PRECISION = 120


def parse_decimal(value: Union[str, int, Decimal], field: str = "value") -> Decimal:
    """
    Parse a decimal numeral into a finite Decimal.

    Args:
        value: Decimal string ("1.05"), int or Decimal
        field: Field name used in the error message

    Raises:
        MalformedNumericInput: If the value is not a finite decimal numeral
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise MalformedNumericInput(
            f"{field} must be a decimal string, got {type(value).__name__}",
            context={field: repr(value)},
        )
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise MalformedNumericInput(
                f"{field} is not a decimal numeral: {value!r}",
                context={field: value},
            ) from None
    else:
        raise MalformedNumericInput(
            f"{field} must be a decimal string, got {type(value).__name__}",
            context={field: repr(value)},
        )

    if not result.is_finite():
        raise MalformedNumericInput(
            f"{field} must be finite: {value!r}",
            context={field: str(value)},
        )
    return result


def _parse_raw(raw: Union[int, str]) -> int:
    if isinstance(raw, bool):
        raise MalformedNumericInput("Raw fixed-point value must be an integer, got bool")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        try:
            if text.lower().startswith(("0x", "-0x")):
                return int(text, 16)
            if text.lstrip("-").isdigit():
                return int(text, 10)
        except ValueError:
            pass
        raise MalformedNumericInput(
            f"Raw fixed-point value is not an integer: {raw!r}",
            context={"raw": raw},
        )
    raise MalformedNumericInput(
        f"Raw fixed-point value must be an integer, got {type(raw).__name__}",
        context={"raw": repr(raw)},
    )


def to_decimal(raw: Union[int, str], decimals: int = DEFAULT_DECIMALS) -> Decimal:
    """Convert a raw fixed-point integer (int, digits or 0x-hex) to a Decimal."""
    value = _parse_raw(raw)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(value).scaleb(-decimals)


def to_raw(value: Union[str, Decimal], decimals: int = DEFAULT_DECIMALS) -> int:
    """
    Convert a decimal string or Decimal to its raw fixed-point integer.

    Raises:
        MalformedNumericInput: If the input is not a numeral or carries more
            fractional digits than ``decimals`` can represent
    """
    number = parse_decimal(value)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = number.scaleb(decimals)
        integral = scaled.to_integral_value()
        if scaled != integral:
            raise MalformedNumericInput(
                f"{value!r} has more than {decimals} fractional digits",
                context={"value": str(value), "decimals": decimals},
            )
        return int(integral)


class FixedPointConverter:
    """
    Converter bound to a fixed number of decimals.

    Example usage:
        converter = FixedPointConverter()
        converter.to_decimal(1500000000000000000)  # Decimal("1.5")
        converter.to_raw("1.5")                    # 1500000000000000000
    """

    def __init__(self, decimals: int = DEFAULT_DECIMALS):
        if decimals < 0:
            raise ValueError(f"decimals must be non-negative, got {decimals}")
        self.decimals = decimals

    def to_decimal(self, raw: Union[int, str]) -> Decimal:
        return to_decimal(raw, self.decimals)

    def to_raw(self, value: Union[str, Decimal]) -> int:
        return to_raw(value, self.decimals)
