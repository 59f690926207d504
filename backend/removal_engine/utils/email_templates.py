import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from removal_engine.utils.clock import utc_now

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class LegalFramework:
    template: str
    response_days: int


FRAMEWORKS = {
    "GDPR": LegalFramework("removal_request_gdpr.txt", 30),
    "CCPA": LegalFramework("removal_request_ccpa.txt", 45),
    "GDPR/CCPA": LegalFramework("removal_request_combined.txt", 30),
}
DEFAULT_FRAMEWORK = "GDPR/CCPA"


class EmailTemplates:
    """Removal request letters rendered from ``templates/*.txt``.

    Placeholders use ``{{ name }}``; unknown names are left in place so a
    broken template is visible in review rather than silently blank.
    """

    _template_cache: dict[str, str] = {}

    @classmethod
    def _load_template(cls, template_name: str) -> str | None:
        cached = cls._template_cache.get(template_name)
        if cached is not None:
            return cached
        try:
            content = (TEMPLATE_DIR / template_name).read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Removal template %s unavailable: %s", template_name, exc)
            return None
        cls._template_cache[template_name] = content
        return content

    @classmethod
    def clear_cache(cls) -> None:
        cls._template_cache.clear()

    @staticmethod
    def _render(template: str, values: dict[str, str]) -> str:
        return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)

    @classmethod
    def generate_removal_request_email(
        cls,
        user_email: str,
        broker_name: str,
        data_type: str | None = "personal profile",
        listing_url: str | None = None,
        reply_to: str | None = None,
        framework: str = "CCPA",
        now: datetime | None = None,
    ) -> tuple[str, str]:
        """Return ``(subject, body)`` for a request to a broker's privacy address.

        ``framework`` is matched case-insensitively; anything unrecognised
        falls back to the combined GDPR/CCPA letter. The completion deadline
        is the framework's statutory response window counted from ``now``.
        """
        key = framework.strip().upper()
        if key not in FRAMEWORKS:
            logger.warning("Unknown framework %s, using %s", framework, DEFAULT_FRAMEWORK)
            key = DEFAULT_FRAMEWORK
        law = FRAMEWORKS[key]

        due = (now or utc_now()) + timedelta(days=law.response_days)
        values = {
            "user_email": user_email,
            "broker_name": broker_name,
            "data_type": data_type or "personal profile",
            "listing_url": listing_url or "(listing URL not available)",
            "reply_to": reply_to or user_email,
            "deadline": due.strftime("%B %d, %Y"),
        }

        template = cls._load_template(law.template)
        if template is None:
            body = cls._fallback_body(values)
        else:
            body = cls._render(template, values)
        return f"Personal Data Removal Request under {key}", body

    @staticmethod
    def _fallback_body(values: dict[str, str]) -> str:
        return (
            f"Dear {values['broker_name']} Privacy Team,\n\n"
            "I am formally requesting the deletion of all my personal information "
            "from your systems and any listing that displays it.\n\n"
            f"Listing: {values['listing_url']}\n"
            f"Associated email: {values['user_email']}\n\n"
            f"Please complete the removal by {values['deadline']} and confirm to "
            f"{values['reply_to']}.\n\n"
            f"Sincerely,\n{values['user_email']}\n"
        )
