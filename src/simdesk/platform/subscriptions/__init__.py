"""Subscriptions: lifecycle classification and provider reconciliation."""

from simdesk.platform.subscriptions.models import DataPlan, Subscription, SubscriptionStatus

__all__ = ["DataPlan", "Subscription", "SubscriptionStatus"]
