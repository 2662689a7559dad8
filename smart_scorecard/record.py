"""OAuth2 redirect handling, token exchange and patient record assembly.

Each ``/app`` request walks the same states once: error -> state check ->
code exchange -> FHIR fetch -> bundle assembly -> scoring. Nothing is
retried; authorization codes are single use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import httpx
import requests
from pydantic import BaseModel

from . import config
from .exceptions import StateMismatchError, UpstreamExchangeError, UpstreamFetchError
from .fhir_models import (
    Bundle,
    Patient,
    ResourceParseError,
    build_bundle,
    bundle_entry,
    bundle_resources,
    parse_resource,
    resource_type,
    to_fhir_dict,
    to_fhir_json,
)
from .scorecard import IgProfile, score_bundle
from .sessions import LaunchContext

logger = logging.getLogger(__name__)

PATIENT_DETAIL_FIELDS = ("id", "name", "gender", "birthDate")


class CallbackAction(Enum):
    REDIRECT = "redirect"
    ERROR = "error"
    NO_LAUNCH = "no_launch"
    EXCHANGE = "exchange"


@dataclass(frozen=True)
class CallbackOutcome:
    action: CallbackAction
    redirect_url: Optional[str] = None


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    patient_id: Optional[str]
    scope: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def redacted(self) -> Dict[str, Any]:
        """Token response safe to echo back in diagnostics."""
        shown = dict(self.raw)
        for key in ("access_token", "refresh_token", "id_token"):
            if shown.get(key):
                shown[key] = str(shown[key])[:8] + "..."
        return shown


@dataclass
class ClinicalRecord:
    patient: Patient
    conditions: List[BaseModel] = field(default_factory=list)
    medications: List[BaseModel] = field(default_factory=list)


@dataclass
class AppReport:
    token: TokenResponse
    patient_details: Dict[str, Any]
    bundle: Bundle
    scorecard: Dict[str, Any]


def check_callback(params: Mapping[str, str], context: Optional[LaunchContext]) -> CallbackOutcome:
    """Decide what to do with the authorization server's redirect.

    Runs before any network call. A callback without ``state`` is accepted;
    a ``state`` that is present (even empty) and differs from the stored one
    raises StateMismatchError.
    """
    if "error" in params:
        if params.get("error_uri"):
            return CallbackOutcome(CallbackAction.REDIRECT, redirect_url=params["error_uri"])
        return CallbackOutcome(CallbackAction.ERROR)

    if "state" in params and (context is None or params["state"] != context.anti_forgery_state):
        logger.warning("OAuth2 state does not match the pending launch")
        raise StateMismatchError("The state parameter does not match this launch.", detail=dict(params))

    if context is None:
        return CallbackOutcome(CallbackAction.NO_LAUNCH)
    return CallbackOutcome(CallbackAction.EXCHANGE)


def exchange_code(
    context: LaunchContext,
    code: Optional[str],
    redirect_uri: str,
    session: Optional[requests.Session] = None,
    timeout: float = config.HTTP_TIMEOUT,
) -> TokenResponse:
    """POST the authorization code to the token endpoint."""
    token_data = {
        "grant_type": "authorization_code",
        "code": code or "",
        "redirect_uri": redirect_uri,
        "client_id": context.client_id or "",
    }
    logger.info(f"Exchanging authorization code for access token at {context.token_url}")
    http = session or requests

    try:
        token_resp = http.post(context.token_url, data=token_data, timeout=timeout)
        token_resp.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.error(f"Token exchange request failed: {e}")
        raise UpstreamExchangeError("Token exchange failed", detail=str(e)) from e

    try:
        token_response = token_resp.json()
    except ValueError as e:
        logger.error(f"Token response is not JSON: {e}")
        raise UpstreamExchangeError("Token endpoint returned a malformed response") from e

    if not isinstance(token_response, dict) or not token_response.get("access_token"):
        logger.error("Token exchange returned no access_token")
        raise UpstreamExchangeError("Token endpoint did not return an access token")

    token = TokenResponse(
        access_token=token_response["access_token"],
        patient_id=token_response.get("patient"),
        scope=token_response.get("scope"),
        raw=token_response,
    )
    logger.info(f"Token response: patient={token.patient_id} scope={token.scope}")
    return token


class FHIRClient:
    """Bearer-authenticated FHIR reads and searches for a single request."""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout: float = config.HTTP_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": config.CONTENT_TYPE,
                "User-Agent": config.USER_AGENT,
            },
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> "FHIRClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> BaseModel:
        url = f"{self.base_url}/{path}"
        logger.info(f"Fetching FHIR resource: {url} {params or ''}")
        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
            return parse_resource(response.content)
        except httpx.HTTPError as e:
            logger.error(f"FHIR request to {url} failed: {e}")
            raise UpstreamFetchError(f"FHIR request to {path} failed", detail=str(e)) from e
        except ResourceParseError as e:
            logger.error(f"FHIR response from {url} is not a FHIR resource: {e}")
            raise UpstreamFetchError(f"FHIR server returned an invalid resource for {path}") from e

    def read(self, kind: str, resource_id: str) -> BaseModel:
        resource = self._get(f"{kind}/{resource_id}")
        if resource_type(resource) != kind:
            raise UpstreamFetchError(
                f"Expected {kind}/{resource_id}, got {resource_type(resource)}"
            )
        return resource

    def search(self, kind: str, params: Dict[str, str]) -> List[BaseModel]:
        """Return every resource in the searchset, in server order."""
        bundle = self._get(kind, params=params)
        if not isinstance(bundle, Bundle):
            raise UpstreamFetchError(
                f"Search for {kind} returned {resource_type(bundle)}, expected Bundle"
            )
        return list(bundle_resources(bundle))


def fetch_clinical_record(client: FHIRClient, patient_id: Optional[str]) -> ClinicalRecord:
    if not patient_id:
        raise UpstreamFetchError("Token response carried no patient context")

    patient = client.read("Patient", patient_id)
    logger.info(f"Patient: {patient.id}")

    conditions = client.search("Condition", {"patient": patient_id, "clinicalstatus": "active"})
    logger.info(f"Conditions: {len(conditions)}")

    medications = client.search("MedicationOrder", {"patient": patient_id, "status": "active"})
    logger.info(f"Medications: {len(medications)}")

    return ClinicalRecord(patient=patient, conditions=conditions, medications=medications)


def assemble_bundle(record: ClinicalRecord) -> Bundle:
    """Patient first, then conditions, then medication orders, as fetched."""
    entries = [bundle_entry(record.patient)]
    entries.extend(bundle_entry(resource) for resource in record.conditions)
    entries.extend(bundle_entry(resource) for resource in record.medications)
    logger.info(f"Built the bundle with {len(entries)} entries")
    return build_bundle("collection", entries)


def patient_details(patient: BaseModel) -> Dict[str, Any]:
    data = to_fhir_dict(patient)
    return {k: data[k] for k in PATIENT_DETAIL_FIELDS if k in data}


def build_report(
    context: LaunchContext,
    code: Optional[str],
    redirect_uri: str,
    session: Optional[requests.Session] = None,
    transport: Optional[httpx.BaseTransport] = None,
    timeout: float = config.HTTP_TIMEOUT,
) -> AppReport:
    """Exchange the code, fetch the record, and score it."""
    token = exchange_code(context, code, redirect_uri, session=session, timeout=timeout)

    with FHIRClient(context.issuer_url or "", token.access_token, timeout=timeout, transport=transport) as client:
        record = fetch_clinical_record(client, token.patient_id)

    bundle = assemble_bundle(record)
    report = score_bundle(to_fhir_json(bundle), IgProfile.NONE)
    return AppReport(
        token=token,
        patient_details=patient_details(record.patient),
        bundle=bundle,
        scorecard=report,
    )
