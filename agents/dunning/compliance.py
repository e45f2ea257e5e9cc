"""Contact-window gate and debt-collection disclosures.

Outbound communication is only permitted between 08:00 and 21:00 in the
consumer's local time. Every collection email carries the mini-Miranda
statement; the first contact additionally carries the validation notice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

WINDOW_START_HOUR = 8
WINDOW_END_HOUR = 21

PROHIBITED_PHRASES = (
    "threaten",
    "arrest",
    "jail",
    "lawsuit",
    "garnish",
    "seize",
    "criminal",
)

MINI_MIRANDA = (
    "This is an attempt to collect a debt and any information obtained "
    "will be used for that purpose."
)

VALIDATION_NOTICE = (
    "NOTICE: You have 30 days to dispute this debt. If you do not dispute it "
    "within 30 days, we will assume it is valid.\n\n"
    "If you dispute this debt, we will obtain verification of the debt and mail "
    "you a copy. If you request it in writing within 30 days, we will provide you "
    "with the name and address of the original creditor.\n\n"
    "This communication is from a debt collector."
)


def _zone(tz: str | ZoneInfo) -> ZoneInfo:
    return tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)


def is_compliant_time(instant: datetime, tz: str | ZoneInfo) -> bool:
    """True iff the local hour of ``instant`` is within [08:00, 21:00)."""
    local = instant.astimezone(_zone(tz))
    return WINDOW_START_HOUR <= local.hour < WINDOW_END_HOUR


def at_local_hour(now: datetime, tz: str | ZoneInfo, days_ahead: int, hour: int) -> datetime:
    """Instant (UTC) of ``hour``:00 local time, ``days_ahead`` local days after ``now``."""
    zone = _zone(tz)
    local_day = now.astimezone(zone).date() + timedelta(days=days_ahead)
    return datetime.combine(local_day, time(hour=hour), tzinfo=zone).astimezone(UTC)


def next_compliant_time(tz: str | ZoneInfo, now: datetime | None = None) -> datetime:
    """Next window opening: today 08:00 local before 08:00, otherwise tomorrow 08:00.

    Args:
        tz: Consumer timezone
        now: Current timestamp (for testing)

    Returns:
        Aware UTC datetime
    """
    if now is None:
        now = datetime.now(UTC)
    local = now.astimezone(_zone(tz))
    days_ahead = 0 if local.hour < WINDOW_START_HOUR else 1
    return at_local_hour(now, tz, days_ahead, WINDOW_START_HOUR)


@dataclass
class DisclosureData:
    """Facts printed in the disclosure footer."""

    creditor_name: str
    amount_due: Decimal
    currency: str
    invoice_number: str
    is_first_contact: bool = False
    org_address: str | None = None
    org_phone: str | None = None


def disclosure_footer(data: DisclosureData) -> str:
    lines = [
        "---",
        MINI_MIRANDA,
        "",
        "You have the right to request that we stop contacting you about this debt. "
        'To do so, please reply to this email with "STOP" or contact us at the '
        "information below.",
        "",
        f"Creditor: {data.creditor_name}",
        f"Debt Amount: {data.currency} {data.amount_due:.2f}",
        f"Invoice Number: {data.invoice_number}",
    ]
    if data.org_address:
        lines.append(f"Address: {data.org_address}")
    if data.org_phone:
        lines.append(f"Phone: {data.org_phone}")
    lines.extend(["", "This communication is from a debt collector."])
    return "\n".join(lines)


def add_disclosures(
    body: str, data: DisclosureData, include_validation_notice: bool = False
) -> str:
    """Append the validation notice (first contact) and the footer to ``body``."""
    if include_validation_notice or data.is_first_contact:
        body += "\n\n" + VALIDATION_NOTICE
    return body + "\n\n" + disclosure_footer(data)


def validate_content(body: str) -> tuple[bool, list[str]]:
    """Check generated content for the mini-Miranda statement and prohibited language.

    Returns:
        Tuple of (compliant, issues)
    """
    issues: list[str] = []
    lower = body.lower()
    if "attempt to collect a debt" not in lower:
        issues.append("Missing mini-Miranda disclosure")
    for phrase in PROHIBITED_PHRASES:
        if phrase in lower:
            issues.append(f'Potentially prohibited language: "{phrase}"')
    return not issues, issues
