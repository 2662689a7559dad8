# Configuration for the SMART on FHIR Scorecard app
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parent.parent

# Issuer -> client mapping file
CONFIG_PATH = os.getenv("SCORECARD_CONFIG", str(ROOT_DIR / "config.yml"))

# Server configuration
BACKEND_PORT = int(os.getenv("BACKEND_PORT", "9001"))
APP_BASE_URL = os.getenv("APP_BASE_URL", "")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Outbound calls to the authorization server and FHIR server
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "20"))
USER_AGENT = "SMART-Scorecard/1.0"

# Session cookie carrying the server-side launch context
SESSION_COOKIE = os.getenv("SESSION_COOKIE", "scorecard_session")
# Seconds a pending launch waits for its /app redirect before it is dropped
SESSION_TTL = float(os.getenv("SESSION_TTL", "600"))

# FHIR
CONTENT_TYPE = "application/fhir+json"
OAUTH_URIS_EXTENSION = "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"


@dataclass(frozen=True)
class IssuerEntry:
    key: str
    client_id: Optional[str]
    scopes: Optional[str]


@dataclass(frozen=True)
class IssuerConfig:
    """Client identity and scopes per EHR, keyed by issuer URL substring."""

    entries: Tuple[IssuerEntry, ...] = ()

    def lookup(self, issuer_url: Optional[str]) -> Optional[IssuerEntry]:
        """Return the first entry whose key occurs in ``issuer_url``.

        Entries are tried in file order, so an earlier short key shadows a
        later, more specific one.
        """
        if not issuer_url:
            return None
        for entry in self.entries:
            if entry.key in issuer_url:
                return entry
        return None

    def get_client_id(self, issuer_url: Optional[str]) -> Optional[str]:
        entry = self.lookup(issuer_url)
        return entry.client_id if entry else None

    def get_scopes(self, issuer_url: Optional[str]) -> Optional[str]:
        entry = self.lookup(issuer_url)
        return entry.scopes if entry else None


def parse_issuer_config(data) -> IssuerConfig:
    if data is None:
        return IssuerConfig()
    if not isinstance(data, dict):
        raise ConfigError("Issuer configuration must be a mapping of issuer substrings")

    entries = []
    for key, value in data.items():
        if not isinstance(value, dict):
            raise ConfigError(f"Issuer entry '{key}' must be a mapping", detail={"key": key})
        client_id = value.get("client_id")
        scopes = value.get("scopes")
        entries.append(IssuerEntry(
            key=str(key),
            client_id=str(client_id) if client_id is not None else None,
            scopes=str(scopes) if scopes is not None else None,
        ))
    return IssuerConfig(entries=tuple(entries))


def load_issuer_config(path=CONFIG_PATH) -> IssuerConfig:
    """Load the issuer mapping once at startup."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Issuer configuration not found at {path}; no client ids configured")
        return IssuerConfig()

    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid issuer configuration in {path}", detail=str(e)) from e

    issuer_config = parse_issuer_config(data)
    logger.info(f"Loaded {len(issuer_config.entries)} issuer entries from {path}")
    return issuer_config
