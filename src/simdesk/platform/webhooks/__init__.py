"""Webhook health monitoring, reliability coordination and safety-net polling."""

from simdesk.platform.webhooks.monitor import HealthChangeEvent, WebhookHealthMonitor
from simdesk.platform.webhooks.reliability import FailurePattern, WebhookReliabilityCoordinator
from simdesk.platform.webhooks.safety_net import SafetyNetActivator, SafetyNetStatus

__all__ = [
    "FailurePattern",
    "HealthChangeEvent",
    "SafetyNetActivator",
    "SafetyNetStatus",
    "WebhookHealthMonitor",
    "WebhookReliabilityCoordinator",
]
