"""Token identifiers and smallest-unit conversion."""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal

SOL_MINT = "So11111111111111111111111111111111111111112"

TOKEN_MINTS: dict[str, str] = {
    "SOL": SOL_MINT,
    "WSOL": SOL_MINT,
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
    "BONK": "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
    "JUP": "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN",
    "RAY": "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R",
    "WIF": "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm",
    "PYTH": "HZ1JovNiVvGrGNiiYvEozEVgZ58xaU3RKwX8eACQBCt3",
    "ORCA": "orcaEKTdK7LKz57vaAYr9QeNsVEPfiu6QeMU1kektZE",
    "SAMO": "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
    "RENDER": "rndrizKT3MK1iimdxRdWabcF7Zg7AR5T4nud4EkHBof",
    "JITO": "jtojtomepa8beP8AuQc6eXt5FriJwfFMwQx2v2f9mCL",
}

KNOWN_DECIMALS: dict[str, int] = {
    SOL_MINT: 9,
    TOKEN_MINTS["USDC"]: 6,
    TOKEN_MINTS["USDT"]: 6,
    TOKEN_MINTS["BONK"]: 5,
    TOKEN_MINTS["JUP"]: 6,
    TOKEN_MINTS["RAY"]: 6,
}

DEFAULT_DECIMALS = 9


def resolve_mint(token: str) -> str:
    """Map a well-known symbol to its mint; addresses pass through unchanged."""
    return TOKEN_MINTS.get(token.upper(), token)


def known_decimals(mint: str, fallback: int | None = None) -> int:
    """Decimals for a mint, using the static table before the fallback."""
    if mint in KNOWN_DECIMALS:
        return KNOWN_DECIMALS[mint]
    return DEFAULT_DECIMALS if fallback is None else fallback


def to_smallest_unit(amount: float | Decimal | str, decimals: int) -> int:
    """Scale a human amount to integer smallest units, flooring the remainder."""
    if decimals < 0:
        raise ValueError("decimals_must_be_non_negative")
    scaled = Decimal(str(amount)).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_smallest_unit(amount: int | str, decimals: int) -> Decimal:
    """Scale integer smallest units back to a human amount (exact)."""
    if decimals < 0:
        raise ValueError("decimals_must_be_non_negative")
    return Decimal(int(amount)).scaleb(-decimals)
