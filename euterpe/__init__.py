"""Music library core: configuration, helpers, models, artwork lookup and storage."""

__version__ = "0.1.0"