"""Season delegation cache, reward calculation and payout service."""

__version__ = "0.1.0"
