"""CareHooks - webhook dispatch for hospital domain events."""

__version__ = "0.1.0"
