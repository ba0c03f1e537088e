"""Cross-cutting utilities for the sync core.

Modules:
    alerts: Discord webhook notifications.
    logging: Structured JSON logging.
"""
