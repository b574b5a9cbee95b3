"""Core configuration and logging for CareHooks."""
