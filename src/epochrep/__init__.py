"""epochrep — off-chain replay of an epoch-based anonymous reputation protocol."""

__version__ = "0.1.0"
