"""Organization configuration for the dunning outreach agent.

Provides org-specific settings (sender identity, timezone, disclosure
details, campaign defaults) with environment-based overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.core.config import settings

from .dto import CampaignConfig


@dataclass
class OrgConfig:
    """Organization level outreach settings.

    Supports org-specific overrides via environment variables
    with pattern: DUNNING_<ORG_ID>_<SETTING>
    """

    org_id: str
    org_name: str = "Accounts Receivable"
    from_name: str = "Accounts Receivable"
    reply_to: str | None = None
    org_address: str | None = None
    org_phone: str | None = None
    currency: str = "USD"
    timezone: str = field(default_factory=lambda: settings.DEFAULT_TIMEZONE)
    first_email_delay_minutes: int = field(
        default_factory=lambda: settings.AUTO_CREATE_FIRST_EMAIL_DELAY_MINUTES
    )
    campaign_defaults: CampaignConfig = field(default_factory=CampaignConfig)

    def __post_init__(self):
        try:
            self._tzinfo = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone for org {self.org_id}: {self.timezone}") from exc

    @property
    def tzinfo(self) -> ZoneInfo:
        return self._tzinfo

    @classmethod
    def from_org(cls, org_id: str) -> "OrgConfig":
        """Create configuration for a specific organization.

        Args:
            org_id: Organization identifier

        Returns:
            Configured instance with org-specific overrides
        """
        prefix = f"DUNNING_{org_id.upper().replace('-', '_')}"
        base = cls(org_id=org_id)

        defaults = CampaignConfig(
            max_attempts=int(os.getenv(f"{prefix}_MAX_ATTEMPTS", base.campaign_defaults.max_attempts)),
            days_between_emails=int(
                os.getenv(f"{prefix}_DAYS_BETWEEN_EMAILS", base.campaign_defaults.days_between_emails)
            ),
        )
        defaults.validate()

        return cls(
            org_id=org_id,
            org_name=os.getenv(f"{prefix}_ORG_NAME", base.org_name),
            from_name=os.getenv(f"{prefix}_FROM_NAME", base.from_name),
            reply_to=os.getenv(f"{prefix}_REPLY_TO", base.reply_to),
            org_address=os.getenv(f"{prefix}_ADDRESS", base.org_address),
            org_phone=os.getenv(f"{prefix}_PHONE", base.org_phone),
            currency=os.getenv(f"{prefix}_CURRENCY", base.currency),
            timezone=os.getenv(f"{prefix}_TIMEZONE", base.timezone),
            first_email_delay_minutes=int(
                os.getenv(f"{prefix}_FIRST_EMAIL_DELAY_MINUTES", base.first_email_delay_minutes)
            ),
            campaign_defaults=defaults,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "org_id": self.org_id,
            "org_name": self.org_name,
            "from_name": self.from_name,
            "reply_to": self.reply_to,
            "org_address": self.org_address,
            "org_phone": self.org_phone,
            "currency": self.currency,
            "timezone": self.timezone,
            "first_email_delay_minutes": self.first_email_delay_minutes,
            "campaign_defaults": self.campaign_defaults.to_dict(),
        }
