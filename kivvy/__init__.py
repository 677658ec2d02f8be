"""
Kivvy Jobs - background job layer of the Kivvy activity marketplace

A multi-queue, multi-worker task system with:
- Durable Redis queue store (in-memory fallback when Redis is down)
- Retries with exponential backoff and stall recovery
- Cron-style recurring schedules
- Email/SMS/push delivery, payment capture/refund, reports and maintenance
"""

__version__ = "1.0.0"

from kivvy.core.config import KivvyConfig
from kivvy.runtime import JobRuntime

__all__ = ["JobRuntime", "KivvyConfig", "__version__"]
