"""Currency validation and amount conversion utilities."""
from decimal import ROUND_HALF_UP, Decimal

# ISO 4217 currency codes accepted by the epayment.kz gateway
supported_currencies = [
    "KZT",  # Kazakhstani Tenge
    "USD",  # United States Dollar
    "EUR",  # Euro
    "RUB",  # Russian Ruble
]

# Currency symbols for receipts
currency_symbols = {
    "KZT": "₸",
    "USD": "$",
    "EUR": "€",
    "RUB": "₽",
}

# Amount bounds in the smallest currency unit
MIN_PAYMENT_AMOUNT = 100
MAX_PAYMENT_AMOUNT = 10_000_000

_CENTS = Decimal("0.01")


def validate_currency(currency: str) -> bool:
    """
    Validate if a currency code is supported.

    Args:
        currency: ISO 4217 currency code (e.g., "KZT", "USD")

    Returns:
        True if currency is supported, False otherwise

    Example:
        >>> validate_currency("KZT")
        True
        >>> validate_currency("XYZ")
        False
    """
    if not currency:
        return False

    return currency.upper() in supported_currencies


def minor_to_major(amount: int) -> Decimal:
    """
    Convert an amount in the smallest unit to a two-place decimal.

    Uses exact decimal arithmetic so 10050 becomes exactly 100.50.

    Examples:
        >>> minor_to_major(2000)
        Decimal('20.00')
        >>> minor_to_major(10050)
        Decimal('100.50')
    """
    return (Decimal(amount) / Decimal(100)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_gateway_amount(amount: Decimal) -> str:
    """Render a decimal amount the way the gateway query string expects ("20.00")."""
    return f"{amount.quantize(_CENTS, rounding=ROUND_HALF_UP):.2f}"


def format_amount_for_currency(amount: int, currency: str) -> str:
    """
    Format an amount in the smallest unit to a human-readable string.

    Examples:
        >>> format_amount_for_currency(500000, "KZT")
        '₸5,000.00 KZT'
    """
    currency_upper = currency.upper()
    symbol = currency_symbols.get(currency_upper, currency_upper)
    return f"{symbol}{minor_to_major(amount):,.2f} {currency_upper}"
