from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from numbers import Real

from towing_negotiation.exceptions import ValidationError

MIN_AMOUNT = Decimal("500")
MAX_AMOUNT = Decimal("500000")
CURRENCY_SYMBOL = "RD$"

AMOUNT_LIMITS = {"min": 500, "max": 500000}

_CENTS = Decimal("0.01")


def is_valid_amount(amount) -> bool:
    """True apenas para valores finitos dentro de [MIN_AMOUNT, MAX_AMOUNT]."""
    if isinstance(amount, bool) or not isinstance(amount, (Real, Decimal)):
        return False
    try:
        value = Decimal(str(amount)) if not isinstance(amount, Decimal) else amount
    except InvalidOperation:
        return False
    if not value.is_finite():
        return False
    return MIN_AMOUNT <= value <= MAX_AMOUNT


def to_money(value) -> Decimal:
    """
    Normaliza um valor monetário (int, float, Decimal ou str) para Decimal com 2 casas.
    Levanta ValidationError se o valor for malformado, não finito ou fora do intervalo.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Monto invalido: {value!r}")
    if isinstance(value, str):
        try:
            value = Decimal(value.replace(",", "").strip())
        except InvalidOperation as e:
            raise ValidationError(f"Monto invalido: {value!r}") from e
    if not is_valid_amount(value):
        raise ValidationError(
            f"El monto debe estar entre {format_amount(MIN_AMOUNT)} y {format_amount(MAX_AMOUNT)} (recibido: {value!r})"
        )
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_amount(amount) -> str:
    """Formato de exibição: 'RD$ 15,000.00'. Usado só para compor mensagens, nunca para detecção."""
    value = Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return f"{CURRENCY_SYMBOL} {value:,.2f}"
