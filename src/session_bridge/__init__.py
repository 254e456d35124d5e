"""session-bridge: keep borrowed trading-site sessions alive and accounted for."""

__version__ = "0.1.0"
