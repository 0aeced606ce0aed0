"""
tiergate - Subscription, usage metering and tier enforcement

Core of a personal-finance SaaS billing layer:
- Tier catalog with quotas, features and pricing
- Subscription lifecycle with limit re-basing on tier change
- Per-period usage counters with atomic increments
- Policy layer for account, balance and feature gating
"""

__version__ = "0.1.0"
