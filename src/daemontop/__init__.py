"""daemontop - Docker daemon operations dashboard."""

__version__ = "0.1.0"
