"""Collaborator contracts and adapters.

The executor and reply handler only depend on the three protocols
below. Concrete implementations:

- ``TemplateContentGenerator`` renders per-tone Jinja2 templates.
- ``HttpContentClassifier`` calls a reply classification endpoint.
- ``backend.integrations.brevo_client.BrevoEmailSender`` delivers mail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal, Protocol

import httpx
import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from backend.core.config import settings

from .config import OrgConfig
from .dto import CampaignContext, CustomerContext, InvoiceContext, ReplyIntent, Tone
from .errors import ClassificationFailure

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"


@dataclass
class SendResult:
    """Outcome of one transport call."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    dry_run: bool = False


@dataclass
class GeneratedEmail:
    subject: str
    body: str


@dataclass
class GenerationContext:
    """Everything a content generator may use to write one email."""

    org: OrgConfig
    customer: CustomerContext
    invoice: InvoiceContext
    campaign: CampaignContext
    tone: Tone
    hints: list[str] = field(default_factory=list)
    is_first_contact: bool = False


class ReplyAnalysis(BaseModel):
    """Structured classification of an inbound reply."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    intent: ReplyIntent = Field(..., description="Detected reply intent")
    urgency: Literal["low", "medium", "high"] = Field("medium", description="Urgency")
    needs_human_review: bool = Field(False, description="Route to an operator")
    suggested_action: str = Field("respond", description="Next step proposed by the classifier")
    summary: str | None = Field(None, description="One-line summary of the reply")


FAIL_SAFE_ANALYSIS = ReplyAnalysis(
    intent=ReplyIntent.OTHER,
    urgency="medium",
    needs_human_review=True,
    suggested_action="escalate",
    summary="Classification unavailable",
)


class EmailSender(Protocol):
    def send(
        self, to: str, subject: str, body: str, from_name: str, reply_to: str | None
    ) -> SendResult: ...


class ContentGenerator(Protocol):
    def generate(self, context: GenerationContext) -> GeneratedEmail: ...


class ContentClassifier(Protocol):
    def classify(self, reply_text: str) -> ReplyAnalysis: ...


def _money_filter(amount: Decimal | int | float, currency: str = "USD") -> str:
    return f"{currency} {Decimal(amount):,.2f}"


class TemplateContentGenerator:
    """Jinja2 content generator with one body template per tone.

    Templates are looked up in ``templates/<org_id>/`` first, then in
    ``templates/default/``. Subjects come from ``subjects.yaml`` in the
    same search order. A tone without a template falls back to
    ``professional``.
    """

    def __init__(self, templates_dir: Path = TEMPLATES_DIR):
        self.templates_dir = templates_dir

    def _environment(self, org_id: str) -> Environment:
        env = Environment(
            loader=FileSystemLoader(
                [str(self.templates_dir / org_id), str(self.templates_dir / "default")]
            ),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.filters["money"] = _money_filter
        return env

    def _subjects(self, org_id: str) -> dict[str, str]:
        subjects: dict[str, str] = {}
        for folder in ("default", org_id):
            path = self.templates_dir / folder / "subjects.yaml"
            if path.exists():
                subjects.update(yaml.safe_load(path.read_text(encoding="utf-8")) or {})
        return subjects

    def generate(self, context: GenerationContext) -> GeneratedEmail:
        env = self._environment(context.org.org_id)
        tone = context.tone.value
        try:
            template = env.get_template(f"{tone}.txt.j2")
        except TemplateNotFound:
            logger.warning("template_missing", extra={"tone": tone, "org_id": context.org.org_id})
            tone = Tone.PROFESSIONAL.value
            template = env.get_template(f"{tone}.txt.j2")

        values: dict[str, Any] = {
            "org": context.org,
            "customer": context.customer,
            "invoice": context.invoice,
            "campaign": context.campaign,
            "tone": context.tone.value,
            "hints": context.hints,
            "is_first_contact": context.is_first_contact,
        }
        subjects = self._subjects(context.org.org_id)
        subject_template = subjects.get(tone) or subjects.get(Tone.PROFESSIONAL.value, "")
        subject = env.from_string(subject_template).render(**values).strip()
        body = template.render(**values).strip()
        return GeneratedEmail(subject=subject, body=body)


class HttpContentClassifier:
    """Reply classifier backed by an HTTP endpoint returning JSON."""

    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        timeout_ms: int | None = None,
        client: httpx.Client | None = None,
    ):
        self.url = url if url is not None else settings.CLASSIFIER_URL
        self.token = token if token is not None else settings.CLASSIFIER_TOKEN
        timeout = (timeout_ms or settings.CLASSIFIER_TIMEOUT_MS) / 1000.0
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout), headers=headers, follow_redirects=False
        )

    def classify(self, reply_text: str) -> ReplyAnalysis:
        """Classify ``reply_text``.

        Raises:
            ClassificationFailure: On missing endpoint, transport, status or schema errors
        """
        if not self.url:
            raise ClassificationFailure("No classifier endpoint configured")
        try:
            response = self.client.post(self.url, json={"text": reply_text})
        except httpx.HTTPError as exc:
            raise ClassificationFailure(f"Classifier request failed: {exc}") from exc
        if response.status_code != 200:
            raise ClassificationFailure(f"Classifier returned HTTP {response.status_code}")
        try:
            return ReplyAnalysis.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ClassificationFailure(f"Classifier returned invalid payload: {exc}") from exc

    def close(self) -> None:
        self.client.close()
