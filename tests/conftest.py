"""Shared pytest fixtures.

Test tiers
----------
  unit        Fast, fully offline. Modules exercised directly.
  integration FastAPI routes through TestClient. OAuth2 calls are mocked with
              requests-mock, FHIR calls with an httpx.MockTransport.
"""

from __future__ import annotations

import json
from typing import Callable, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from smart_scorecard.config import parse_issuer_config
from smart_scorecard.main import create_app
from smart_scorecard.sessions import LaunchContext, SessionStore

ISSUER = "https://ehr.example.org/fhir"
AUTHORIZE_URL = "https://auth.example.org/authorize"
TOKEN_URL = "https://auth.example.org/token"
OAUTH_URIS = "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast offline unit tests")
    config.addinivalue_line("markers", "integration: route tests with mocked upstreams")


# ---------------------------------------------------------------------------
# FHIR resource fixtures
# ---------------------------------------------------------------------------

def capability_statement(authorize_url: str = AUTHORIZE_URL, token_url: str = TOKEN_URL) -> dict:
    return {
        "resourceType": "CapabilityStatement",
        "rest": [{
            "mode": "server",
            "security": {
                "extension": [{
                    "url": OAUTH_URIS,
                    "extension": [
                        {"url": "authorize", "valueUri": authorize_url},
                        {"url": "token", "valueUri": token_url},
                    ],
                }],
            },
        }],
    }


@pytest.fixture
def patient() -> dict:
    return {
        "resourceType": "Patient",
        "id": "p-001",
        "identifier": [{"system": "urn:mrn", "value": "12345"}],
        "name": [{"family": ["Smith"], "given": ["Jane"]}],
        "gender": "female",
        "birthDate": "1970-01-01",
    }


@pytest.fixture
def conditions() -> List[dict]:
    return [
        {
            "resourceType": "Condition",
            "id": "c-001",
            "patient": {"reference": "Patient/p-001"},
            "code": {"coding": [{"system": "http://snomed.info/sct", "code": "44054006"}]},
            "clinicalStatus": "active",
            "verificationStatus": "confirmed",
        },
        {
            "resourceType": "Condition",
            "id": "c-002",
            "patient": {"reference": "Patient/p-001"},
            "code": {"text": "Hypertension", "coding": [{"display": "Hypertension"}]},
            "clinicalStatus": "active",
            "verificationStatus": "confirmed",
        },
    ]


@pytest.fixture
def medication_orders() -> List[dict]:
    return [
        {
            "resourceType": "MedicationOrder",
            "id": "m-001",
            "status": "active",
            "patient": {"reference": "Patient/p-001"},
            "medicationCodeableConcept": {
                "coding": [{"system": "http://www.nlm.nih.gov/research/umls/rxnorm", "code": "860975"}],
            },
        },
    ]


@pytest.fixture
def record_bundle(patient, conditions, medication_orders) -> dict:
    return {
        "resourceType": "Bundle",
        "type": "collection",
        "entry": [{"resource": r} for r in [patient, *conditions, *medication_orders]],
    }


def searchset(resources: List[dict]) -> dict:
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": len(resources),
        "entry": [{"resource": r} for r in resources],
    }


def completeness_request(bundle: dict, ig: str = None) -> dict:
    parameters = [{"name": "record", "resource": bundle}]
    if ig is not None:
        parameters.append({"name": "ig", "valueCode": ig})
    return {"resourceType": "Parameters", "parameter": parameters}


# ---------------------------------------------------------------------------
# Upstream FHIR server
# ---------------------------------------------------------------------------

class FakeFHIRServer:
    """Routes httpx requests to canned FHIR responses and records them."""

    def __init__(self, routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = None) -> None:
        self.routes = routes or {}
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"resourceType": "OperationOutcome", "issue": [{"severity": "error", "code": "not-found"}]})
        return route(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def fhir_json(status_code: int, body: dict) -> Callable[[httpx.Request], httpx.Response]:
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code,
            content=json.dumps(body).encode(),
            headers={"Content-Type": "application/fhir+json"},
        )
    return respond


@pytest.fixture
def fhir_server(patient, conditions, medication_orders) -> FakeFHIRServer:
    return FakeFHIRServer({
        "/fhir/Patient/p-001": fhir_json(200, patient),
        "/fhir/Condition": fhir_json(200, searchset(conditions)),
        "/fhir/MedicationOrder": fhir_json(200, searchset(medication_orders)),
    })


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

@pytest.fixture
def issuer_config():
    return parse_issuer_config({
        "ehr.example.org": {"client_id": "ABC", "scopes": "launch patient/*.read"},
        "other.example.org": {"client_id": "XYZ", "scopes": "launch"},
    })


@pytest.fixture
def session_store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def launch_context() -> LaunchContext:
    return LaunchContext(
        issuer_url=ISSUER,
        client_id="ABC",
        authorize_url=AUTHORIZE_URL,
        token_url=TOKEN_URL,
        requested_scopes="launch patient/*.read",
        anti_forgery_state="Y",
    )


@pytest.fixture
def app(issuer_config, session_store, fhir_server):
    app = create_app(issuer_config=issuer_config, sessions=session_store)
    app.state.fhir_transport = fhir_server.transport
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
