"""
SimDesk platform core.

Lifecycle reconciliation of provisioned eSIM subscriptions and the
credit-note pipeline that refunds cancelled ones.
"""

__version__ = "1.0.0"
