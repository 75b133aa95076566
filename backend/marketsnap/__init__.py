"""MarketSnap offline media queue and sync engine."""

__version__ = "0.3.0"
