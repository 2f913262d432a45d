"""
Subscription lifecycle classification.

A subscription record carries several, sometimes contradictory, signals about
its state: the stored status, an explicit cancellation flag, free-form
metadata written by various code paths, and the last raw payload received
from the provider. ``CancellationClassifier`` resolves them with an ordered
decision table. Each rule inspects one signal source and either returns a
verdict or abstains; the first verdict wins.

Expiry is a separate question (``is_expired``): an expired subscription is
not cancelled and is never credited.

The module also holds the provider status mapping shared by the polling
reconciler and the webhook handler (``map_provider_status``).
"""

import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from simdesk.platform.core.clock import ensure_utc
from simdesk.platform.subscriptions.models import Subscription, SubscriptionStatus

logger = structlog.get_logger(__name__)

# Provider codes that mean the eSIM can no longer be used
TERMINAL_NEGATIVE_PROVIDER_CODES = frozenset(
    {"CANCEL", "CANCELLED", "REVOKED", "TERMINATED", "SUSPENDED", "DISABLED"}
)

# Stored statuses that outrank a possibly stale provider snapshot
PROVIDER_OVERRIDE_STATUSES = frozenset(
    {SubscriptionStatus.WAITING_FOR_ACTIVATION.value, SubscriptionStatus.ACTIVATED.value}
)

METADATA_CANCEL_FLAGS = ("isCancelled", "is_cancelled", "refunded", "isRefunded")
METADATA_CANCEL_TIMESTAMPS = (
    "cancelledAt",
    "cancelled_at",
    "cancelRequestTime",
    "refundDate",
    "refunded_at",
)

# Paths (inside metadata) where a provider status may live
PROVIDER_STATUS_PATHS: tuple[tuple[str | int, ...], ...] = (
    ("rawData", "obj", "esimList", 0, "esimStatus"),
    ("rawData", "esimStatus"),
    ("rawData", "esimList", 0, "esimStatus"),
    ("rawData", "data", "esimStatus"),
    ("rawData", "response", "esimStatus"),
    ("providerStatus",),
)


class Verdict(str, Enum):
    CANCELLED = "cancelled"
    NOT_CANCELLED = "not_cancelled"


@dataclass(frozen=True)
class SubscriptionSignals:
    """The inputs the classifier reads, detached from the ORM row."""

    status: str | None = None
    is_cancelled: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)
    activation_date: datetime | None = None
    validity_days: int | None = None

    @classmethod
    def from_subscription(
        cls, subscription: Subscription, validity_days: int | None = None
    ) -> "SubscriptionSignals":
        return cls(
            status=subscription.status,
            is_cancelled=bool(subscription.is_cancelled),
            metadata=parse_metadata(subscription.metadata_json),
            activation_date=subscription.activation_date,
            validity_days=validity_days,
        )


def parse_metadata(raw: Any) -> dict[str, Any]:
    """Metadata is a dict, a JSON-encoded string from older writers, or nothing."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str | bytes) and raw:
        try:
            decoded = json.loads(raw)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _dig(data: Any, path: Sequence[str | int]) -> Any:
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, Sequence) or isinstance(current, str) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
    return current


def extract_provider_status(metadata: Mapping[str, Any]) -> str | None:
    """First provider status found along the known payload paths, upper-cased."""
    for path in PROVIDER_STATUS_PATHS:
        value = _dig(metadata, path)
        if isinstance(value, str) and value.strip():
            return value.strip().upper()
    return None


# ---------------------------------------------------------------------------
# Decision table
# ---------------------------------------------------------------------------

Rule = Callable[[SubscriptionSignals], Verdict | None]


def stored_status_rule(signals: SubscriptionSignals) -> Verdict | None:
    if signals.status == SubscriptionStatus.CANCELLED.value:
        return Verdict.CANCELLED
    return None


def cancellation_flag_rule(signals: SubscriptionSignals) -> Verdict | None:
    if signals.is_cancelled:
        return Verdict.CANCELLED
    return None


def metadata_rule(signals: SubscriptionSignals) -> Verdict | None:
    metadata = signals.metadata
    if any(metadata.get(flag) is True for flag in METADATA_CANCEL_FLAGS):
        return Verdict.CANCELLED
    if str(metadata.get("status", "")).lower() == SubscriptionStatus.CANCELLED.value:
        return Verdict.CANCELLED
    if metadata.get("cancelledInProvider") is True:
        return Verdict.CANCELLED
    if any(metadata.get(key) for key in METADATA_CANCEL_TIMESTAMPS):
        return Verdict.CANCELLED
    return None


def provider_payload_rule(signals: SubscriptionSignals) -> Verdict | None:
    if signals.status in PROVIDER_OVERRIDE_STATUSES:
        # The stored status is newer than any snapshot we hold
        return None
    provider_status = extract_provider_status(signals.metadata)
    if provider_status in TERMINAL_NEGATIVE_PROVIDER_CODES:
        return Verdict.CANCELLED
    return None


DEFAULT_RULES: tuple[tuple[str, Rule], ...] = (
    ("stored_status", stored_status_rule),
    ("cancellation_flag", cancellation_flag_rule),
    ("metadata", metadata_rule),
    ("provider_payload", provider_payload_rule),
)


@dataclass(frozen=True)
class Classification:
    verdict: Verdict
    rule: str | None  # None when no rule had an opinion

    @property
    def is_cancelled(self) -> bool:
        return self.verdict is Verdict.CANCELLED


class CancellationClassifier:
    """
    Ordered decision table deciding whether a subscription is cancelled or refunded.

    Pure and total: a rule that trips over malformed input abstains instead of
    raising, so callers on hot paths (reconciler, credit-note scan) never need
    to guard the call.
    """

    def __init__(self, rules: Sequence[tuple[str, Rule]] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def classify(self, signals: SubscriptionSignals) -> Classification:
        for name, rule in self.rules:
            try:
                verdict = rule(signals)
            except (TypeError, ValueError, AttributeError, KeyError) as e:
                logger.debug("Classifier rule abstained on malformed input", rule=name, error=str(e))
                continue
            if verdict is not None:
                return Classification(verdict=verdict, rule=name)
        return Classification(verdict=Verdict.NOT_CANCELLED, rule=None)

    def is_cancelled(self, signals: SubscriptionSignals) -> bool:
        return self.classify(signals).is_cancelled

    def is_subscription_cancelled(
        self, subscription: Subscription, validity_days: int | None = None
    ) -> bool:
        return self.is_cancelled(SubscriptionSignals.from_subscription(subscription, validity_days))

    @staticmethod
    def is_expired(signals: SubscriptionSignals, now: datetime) -> bool:
        """An activated subscription whose validity window has elapsed."""
        if signals.status != SubscriptionStatus.ACTIVATED.value:
            return False
        if signals.activation_date is None or not signals.validity_days:
            return False
        try:
            expires_at = ensure_utc(signals.activation_date) + timedelta(days=int(signals.validity_days))
        except (TypeError, ValueError, OverflowError):
            return False
        return ensure_utc(now) >= expires_at

    def lifecycle(self, signals: SubscriptionSignals, now: datetime) -> SubscriptionStatus:
        """Effective status after combining cancellation and expiry."""
        if self.is_cancelled(signals):
            return SubscriptionStatus.CANCELLED
        if self.is_expired(signals, now):
            return SubscriptionStatus.EXPIRED
        try:
            return SubscriptionStatus(signals.status)
        except ValueError:
            return SubscriptionStatus.ERROR


cancellation_classifier = CancellationClassifier()


# ---------------------------------------------------------------------------
# Provider status mapping
# ---------------------------------------------------------------------------

ACTIVE_PROVIDER_CODES = frozenset({"ONBOARD", "IN_USE", "ENABLED", "ACTIVATED"})
CANCELLED_PROVIDER_CODES = frozenset({"CANCEL", "CANCELLED"})
# Unusable but not a customer cancellation, so never credited
EXPIRED_PROVIDER_CODES = frozenset(
    {
        "EXPIRED",
        "DEPLETED",
        "DISABLED",
        "USED_UP",
        "USED_EXPIRED",
        "REVOKED",
        "SUSPENDED",
        "TERMINATED",
    }
)
ERROR_PROVIDER_CODES = frozenset({"FAILED"})


@dataclass(frozen=True)
class ProviderStatus:
    """Normalised view of one provider record (polling result or webhook content)."""

    esim_status: str | None = None
    smdp_status: str | None = None
    activate_time: str | None = None
    order_usage: int | None = None
    total_volume: int | None = None
    iccid: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProviderStatus":
        def _upper(value: Any) -> str | None:
            return value.strip().upper() if isinstance(value, str) and value.strip() else None

        def _int(value: Any) -> int | None:
            try:
                return int(value) if value is not None and value != "" else None
            except (TypeError, ValueError):
                return None

        activate_time = payload.get("activateTime")
        return cls(
            esim_status=_upper(payload.get("esimStatus")),
            smdp_status=_upper(payload.get("smdpStatus")),
            activate_time=activate_time if isinstance(activate_time, str) and activate_time else None,
            order_usage=_int(payload.get("orderUsage")),
            total_volume=_int(payload.get("totalVolume")),
            iccid=payload.get("iccid") if isinstance(payload.get("iccid"), str) else None,
            raw=dict(payload),
        )

    @property
    def usage_exhausted(self) -> bool:
        return (
            self.order_usage is not None
            and self.total_volume is not None
            and self.total_volume > 0
            and self.order_usage >= self.total_volume
        )

    @property
    def has_activation_evidence(self) -> bool:
        return bool(self.activate_time) or bool(self.order_usage)


def map_provider_status(provider: ProviderStatus) -> SubscriptionStatus | None:
    """
    Map a provider record to a stored status.

    Returns None when the record carries no usable signal; an absent field
    means "unknown", never a terminal state.
    """
    code = provider.esim_status
    if code in CANCELLED_PROVIDER_CODES:
        return SubscriptionStatus.CANCELLED
    if code in EXPIRED_PROVIDER_CODES or provider.usage_exhausted:
        return SubscriptionStatus.EXPIRED
    if provider.smdp_status == "DISABLED":
        return SubscriptionStatus.EXPIRED
    if code in ERROR_PROVIDER_CODES:
        return SubscriptionStatus.ERROR
    if code == "ONBOARD":
        return SubscriptionStatus.ACTIVATED
    if code in ACTIVE_PROVIDER_CODES and provider.has_activation_evidence:
        return SubscriptionStatus.ACTIVATED
    if provider.smdp_status in {"ENABLED", "ACTIVATED"} and provider.has_activation_evidence:
        return SubscriptionStatus.ACTIVATED
    if code is None and provider.activate_time:
        return SubscriptionStatus.ACTIVATED
    return None


__all__ = [
    "CancellationClassifier",
    "Classification",
    "ProviderStatus",
    "SubscriptionSignals",
    "Verdict",
    "cancellation_classifier",
    "extract_provider_status",
    "map_provider_status",
    "parse_metadata",
]
