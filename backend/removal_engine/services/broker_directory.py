import enum
import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path

logger = logging.getLogger(__name__)

DIRECTORY_PATH = Path(__file__).resolve().parent.parent / "data" / "broker_directory.json"


class BrokerRemovalMethod(str, enum.Enum):
    EMAIL = "EMAIL"
    FORM = "FORM"
    BOTH = "BOTH"
    NONE = "NONE"


@dataclass(frozen=True)
class BrokerInfo:
    key: str
    name: str
    removal_method: BrokerRemovalMethod
    privacy_email: str | None = None
    opt_out_url: str | None = None
    estimated_days: int | None = None
    notes: str | None = None

    @property
    def is_automatable(self) -> bool:
        """True when there is a privacy email or an opt-out form to send to."""
        return bool(self.privacy_email or self.opt_out_url)

    def with_override(self, privacy_email: str | None, opt_out_url: str | None) -> "BrokerInfo":
        """Layer an operator-supplied channel over the directory entry."""
        if not privacy_email and not opt_out_url:
            return self
        return replace(
            self,
            privacy_email=privacy_email or self.privacy_email,
            opt_out_url=opt_out_url or self.opt_out_url,
        )


class BrokerDirectory:
    """Read-only lookup of per-broker removal channels."""

    def __init__(self, entries: dict[str, BrokerInfo] | None = None):
        self._entries = entries if entries is not None else self.load_from_json(DIRECTORY_PATH)

    @staticmethod
    def load_from_json(path: Path) -> dict[str, BrokerInfo]:
        """Load broker entries from a JSON file keyed by broker key"""
        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        entries = {}
        for key, raw in data["brokers"].items():
            entries[key.upper()] = BrokerInfo(
                key=key.upper(),
                name=raw["name"],
                removal_method=BrokerRemovalMethod(raw.get("removal_method", "NONE")),
                privacy_email=raw.get("privacy_email"),
                opt_out_url=raw.get("opt_out_url"),
                estimated_days=raw.get("estimated_days"),
                notes=raw.get("notes"),
            )
        logger.debug("Loaded %d brokers from %s", len(entries), path)
        return entries

    def get_broker_info(self, broker_key: str) -> BrokerInfo | None:
        return self._entries.get(broker_key.upper()) if broker_key else None

    def resolve(
        self,
        broker_key: str,
        override_privacy_email: str | None = None,
        override_opt_out_url: str | None = None,
    ) -> BrokerInfo:
        """Directory entry merged with a request's override channel.

        Unknown brokers resolve to a NONE entry so callers can route them
        to manual handling.
        """
        info = self.get_broker_info(broker_key)
        if info is None:
            info = BrokerInfo(
                key=broker_key.upper(),
                name=broker_key.replace("_", " ").title(),
                removal_method=BrokerRemovalMethod.NONE,
            )
        return info.with_override(override_privacy_email, override_opt_out_url)

    def all_brokers(self) -> list[BrokerInfo]:
        return sorted(self._entries.values(), key=lambda b: b.key)


_default_directory: BrokerDirectory | None = None


def get_broker_directory() -> BrokerDirectory:
    global _default_directory
    if _default_directory is None:
        _default_directory = BrokerDirectory()
    return _default_directory
