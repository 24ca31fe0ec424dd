"""Building blocks for a distributed proxy network node: configuration, keys, relays and discovery."""

__version__ = "1.0.0"