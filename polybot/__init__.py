"""PolyBot - multi-tenant BTC 15-minute Polymarket trading core."""

__version__ = "1.0.0"
