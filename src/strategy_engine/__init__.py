"""Strategy execution engine for automated Solana token strategies."""

__version__ = "0.1.0"
