"""SMART launch negotiation.

Resolves an EHR issuer URL to the client identity and scopes configured for
it, discovers the issuer's OAuth2 endpoints from its CapabilityStatement and
builds the authorization redirect.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import quote_plus

import requests

from . import config
from .config import IssuerConfig
from .exceptions import DiscoveryError

logger = logging.getLogger(__name__)

AUTHORIZE_PARAM_ORDER = ("response_type", "client_id", "redirect_uri", "scope", "launch", "state", "aud")


@dataclass(frozen=True)
class LaunchTarget:
    client_id: Optional[str]
    scopes: Optional[str]
    authorize_url: str
    token_url: str


def discover_oauth_endpoints(
    issuer_url: Optional[str],
    session: Optional[requests.Session] = None,
    timeout: float = config.HTTP_TIMEOUT,
) -> Tuple[str, str]:
    """Return ``(authorize_url, token_url)`` from the issuer's CapabilityStatement.

    Looks for the SMART ``oauth-uris`` extension under ``rest[].security``.
    Any failure to reach the issuer or find both URLs raises DiscoveryError.
    """
    if not issuer_url:
        raise DiscoveryError("Missing iss parameter; cannot discover OAuth2 endpoints")

    metadata_url = f"{issuer_url.rstrip('/')}/metadata"
    logger.info(f"Discovering OAuth2 endpoints from {metadata_url}")
    http = session or requests

    try:
        response = http.get(
            metadata_url,
            headers={"Accept": config.CONTENT_TYPE, "User-Agent": config.USER_AGENT},
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.error(f"Error fetching CapabilityStatement from {metadata_url}: {e}")
        raise DiscoveryError(f"Unable to reach issuer {issuer_url}", detail=str(e)) from e

    try:
        statement = response.json()
    except ValueError as e:
        logger.error(f"CapabilityStatement from {metadata_url} is not JSON: {e}")
        raise DiscoveryError(f"Issuer {issuer_url} returned an unreadable CapabilityStatement") from e

    if not isinstance(statement, dict):
        raise DiscoveryError(f"Issuer {issuer_url} returned an unreadable CapabilityStatement")

    for rest in statement.get("rest") or []:
        if not isinstance(rest, dict):
            continue
        security = rest.get("security") or {}
        for extension in security.get("extension") or []:
            if not isinstance(extension, dict) or extension.get("url") != config.OAUTH_URIS_EXTENSION:
                continue
            uris = {
                sub.get("url"): sub.get("valueUri")
                for sub in extension.get("extension") or []
                if isinstance(sub, dict)
            }
            if uris.get("authorize") and uris.get("token"):
                logger.info(f"Discovered endpoints:")
                logger.info(f"  authorize: {uris['authorize']}")
                logger.info(f"  token: {uris['token']}")
                return uris["authorize"], uris["token"]

    logger.error(f"No SMART oauth-uris extension in CapabilityStatement of {issuer_url}")
    raise DiscoveryError(f"Issuer {issuer_url} does not advertise SMART OAuth2 endpoints")


def resolve(
    issuer_url: Optional[str],
    issuer_config: IssuerConfig,
    session: Optional[requests.Session] = None,
    timeout: float = config.HTTP_TIMEOUT,
) -> LaunchTarget:
    """Resolve an issuer to client identity, scopes and OAuth2 endpoints.

    ``client_id`` and ``scopes`` come from the first configured key contained
    in ``issuer_url`` and are None when nothing matches.
    """
    authorize_url, token_url = discover_oauth_endpoints(issuer_url, session=session, timeout=timeout)
    return LaunchTarget(
        client_id=issuer_config.get_client_id(issuer_url),
        scopes=issuer_config.get_scopes(issuer_url),
        authorize_url=authorize_url,
        token_url=token_url,
    )


def new_state() -> str:
    """Fresh 128-bit anti-forgery token."""
    return secrets.token_urlsafe(16)


def build_authorize_url(authorize_url: str, params: Dict[str, Optional[str]]) -> str:
    """Append the OAuth2 authorization parameters in a fixed order."""
    query = "&".join(
        f"{key}={quote_plus(params.get(key) or '')}" for key in AUTHORIZE_PARAM_ORDER
    )
    separator = "&" if "?" in authorize_url else "?"
    return f"{authorize_url}{separator}{query}"
