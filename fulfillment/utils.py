from decimal import Decimal, ROUND_HALF_UP

PAISE = Decimal('0.01')


def to_money(value):
    """Coerce to Decimal rounded to paise. Floats go through str() first."""
    if value is None or value == '':
        return Decimal('0.00')
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(PAISE, rounding=ROUND_HALF_UP)


def to_paise(amount):
    """Rupees → integer paise, as the gateway expects."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_paise(paise):
    return to_money(Decimal(int(paise)) / 100)
