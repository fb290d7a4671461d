"""Access policy — decides whether a user may use paid features right now.

``evaluate_access`` is pure: it is handed the subscription, the bypass
decision, the clock and the result of the ledger corroboration lookup, and
never touches the database itself.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

from subscription_billing.config import Settings
from subscription_billing.models.subscription import Subscription

logger = logging.getLogger(__name__)

ReasonTag = Literal["free", "trial", "paid", "none"]


@dataclass(frozen=True)
class AccessIdentity:
    """Who is asking, plus the one environment signal bypass rules may use."""

    external_id: str | None
    email: str | None
    provider_configured: bool


@dataclass(frozen=True)
class BypassDecision:
    granted: bool
    rule: str | None = None


NO_BYPASS = BypassDecision(granted=False)


class BypassRule(Protocol):
    name: str

    def __call__(self, identity: AccessIdentity) -> bool | None:
        """Return True to grant, False to deny (stop evaluating), None to abstain."""
        ...


@dataclass(frozen=True)
class ForceDisabled:
    disabled: bool
    name: str = "force_disabled"

    def __call__(self, identity: AccessIdentity) -> bool | None:
        return False if self.disabled else None


@dataclass(frozen=True)
class ProviderUnconfigured:
    name: str = "provider_unconfigured"

    def __call__(self, identity: AccessIdentity) -> bool | None:
        return True if not identity.provider_configured else None


@dataclass(frozen=True)
class ExternalIdAllowList:
    ids: frozenset[str]
    name: str = "external_id_allow_list"

    def __call__(self, identity: AccessIdentity) -> bool | None:
        return True if identity.external_id and identity.external_id in self.ids else None


@dataclass(frozen=True)
class EmailAllowList:
    emails: frozenset[str]
    name: str = "email_allow_list"

    def __call__(self, identity: AccessIdentity) -> bool | None:
        return True if identity.email and identity.email.strip().lower() in self.emails else None


class AccessBypassPolicy:
    """Ordered bypass rules; the first rule that does not abstain decides."""

    def __init__(self, rules: list[BypassRule]) -> None:
        self.rules = list(rules)

    def evaluate(self, identity: AccessIdentity) -> BypassDecision:
        for rule in self.rules:
            verdict = rule(identity)
            if verdict is None:
                continue
            if verdict:
                logger.debug("Free access for %s via %s", identity.external_id, rule.name)
            return BypassDecision(granted=verdict, rule=rule.name)
        return NO_BYPASS

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessBypassPolicy":
        return cls(
            [
                ForceDisabled(disabled=settings.disable_free_access),
                ProviderUnconfigured(),
                ExternalIdAllowList(ids=frozenset(settings.free_access_ids)),
                EmailAllowList(emails=frozenset(e.lower() for e in settings.free_access_emails)),
            ]
        )


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    reason_tag: ReasonTag
    status: str
    needs_drift_check: bool = False

    @property
    def is_trial(self) -> bool:
        return self.reason_tag == "trial"

    @property
    def is_free_access(self) -> bool:
        return self.reason_tag == "free"


def derived_status(subscription: Subscription, now: datetime) -> str:
    """Status as the user should see it: a lapsed trial reads ``expired``."""
    if subscription.status == "trial" and (subscription.trial_end is None or now >= subscription.trial_end):
        return "expired"
    return subscription.status


def evaluate_access(
    subscription: Subscription | None,
    bypass: BypassDecision,
    now: datetime,
    corroborated: bool | None,
) -> AccessDecision:
    """Decide entitlement.

    ``corroborated`` is the ledger lookup result: True when a captured or
    authorized payment backs the subscription, False when none exists, None
    when the lookup failed. Only True can produce ``paid``.
    """
    if bypass.granted:
        return AccessDecision(has_access=True, reason_tag="free", status="free")

    if subscription is None:
        return AccessDecision(has_access=False, reason_tag="none", status="none")

    if subscription.status == "trial" and subscription.trial_end is not None and now < subscription.trial_end:
        return AccessDecision(has_access=True, reason_tag="trial", status="trial")

    if (
        subscription.status == "active"
        and subscription.period_end is not None
        and now < subscription.period_end
    ):
        if corroborated:
            return AccessDecision(has_access=True, reason_tag="paid", status="active")
        if corroborated is None:
            logger.warning(
                "Could not corroborate active subscription %s; denying until checked",
                subscription.id,
            )
            return AccessDecision(
                has_access=False, reason_tag="none", status="active", needs_drift_check=True
            )

    return AccessDecision(has_access=False, reason_tag="none", status=derived_status(subscription, now))
