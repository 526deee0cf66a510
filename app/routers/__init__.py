"""
Allotment - Routers Package

FastAPI route handlers.

Routers:
- entitlements: Entitlement checks, usage recording, summaries, alerts and
  the billing hooks that provision packages and boosts
- entitlement_webhooks: Webhook registration, deliveries and retries
"""

from app.routers import (
    entitlements,
    entitlement_webhooks,
)

__all__ = [
    "entitlements",
    "entitlement_webhooks",
]
