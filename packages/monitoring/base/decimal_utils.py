from decimal import Decimal, ROUND_DOWN
from typing import Union, Dict

# Define network token decimals in a single place
NETWORK_TOKEN_DECIMALS: Dict[str, int] = {
    'moonbeam': 18,
    'moonriver': 18,
    'moonbase_alpha': 18,
    'polkadot': 10,
}

# Native asset symbols, used for display only
NETWORK_NATIVE_ASSETS: Dict[str, str] = {
    'moonbeam': 'GLMR',
    'moonriver': 'MOVR',
    'moonbase_alpha': 'DEV',
    'polkadot': 'DOT',
}


def get_network_token_decimals(network: str) -> int:
    """
    Get the number of decimal places for a network's native token.

    Args:
        network: The blockchain network identifier (e.g., 'moonbeam', 'polkadot')

    Returns:
        Number of decimal places for the network's native token
    """
    return NETWORK_TOKEN_DECIMALS.get(network.lower(), 18)


def get_native_network_asset(network: str) -> str:
    network = network.lower()
    if network not in NETWORK_NATIVE_ASSETS:
        raise ValueError(f"Unsupported network: {network}")
    return NETWORK_NATIVE_ASSETS[network]


def truncate_token_amount(amount: Union[str, int, Decimal], decimals: int, precision: int) -> Decimal:
    """
    Convert a raw on-chain amount to token units, truncated (not rounded) to
    ``precision`` decimal places.

    The integer part of the division is done on raw integers so very large
    balances keep their exact value before the final scaling.

    Examples:
        >>> truncate_token_amount(5_999_000_000_000_000, 18, 3)
        Decimal('0.005')
        >>> truncate_token_amount(20 * 10 ** 18 + 1, 18, 0)
        Decimal('20')
    """
    raw = int(amount)
    if precision >= decimals:
        return Decimal(raw) / (Decimal(10) ** decimals)

    scaled = raw // 10 ** (decimals - precision)
    quantum = Decimal(1).scaleb(-precision)
    return (Decimal(scaled) / (Decimal(10) ** precision)).quantize(quantum, rounding=ROUND_DOWN)


def to_token_units(amount: Union[str, int, Decimal], decimals: int) -> int:
    """Whole token units of a raw on-chain amount, rounded towards zero."""
    return int(amount) // 10 ** decimals
