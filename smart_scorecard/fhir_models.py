"""FHIR resource codec.

Thin wrappers over the ``fhir.resources`` DSTU2 models (the release that
still carries ``MedicationOrder``). Top-level payloads decode into the closed
set Patient, Condition, MedicationOrder, Bundle, Parameters and
OperationOutcome; resources nested in a Bundle or Parameters may be any
DSTU2 type. The models validate structure, so a payload that is not valid
DSTU2 is rejected with ResourceParseError.
"""

from __future__ import annotations

import json
from numbers import Number
from typing import Any, Dict, Iterator, List, Optional, Union

from fhir.resources.DSTU2.bundle import Bundle, BundleEntry
from fhir.resources.DSTU2.condition import Condition
from fhir.resources.DSTU2.medicationorder import MedicationOrder
from fhir.resources.DSTU2.operationoutcome import OperationOutcome
from fhir.resources.DSTU2.parameters import Parameters
from fhir.resources.DSTU2.patient import Patient
from pydantic import BaseModel, ValidationError


class ResourceParseError(ValueError):
    """Raised when a payload is not a structurally valid FHIR resource."""


RESOURCE_TYPES = {
    "Patient": Patient,
    "Condition": Condition,
    "MedicationOrder": MedicationOrder,
    "Bundle": Bundle,
    "Parameters": Parameters,
    "OperationOutcome": OperationOutcome,
}


def resource_type(resource: BaseModel) -> str:
    """The ``resourceType`` of a parsed resource."""
    # DSTU2 model classes are named after their resource type
    return type(resource).__name__


def parse_resource(payload: Union[str, bytes, Dict[str, Any]]) -> BaseModel:
    """Decode FHIR JSON (text, bytes or an already-loaded dict)."""
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise ResourceParseError(f"Invalid JSON: {e}") from e
    else:
        data = payload

    if not isinstance(data, dict):
        raise ResourceParseError("FHIR resource must be a JSON object")
    name = data.get("resourceType")
    if not isinstance(name, str):
        raise ResourceParseError("Missing resourceType")

    model = RESOURCE_TYPES.get(name)
    if model is None:
        raise ResourceParseError(f"Unsupported resourceType {name}")
    try:
        return model.model_validate(data)
    except (ValidationError, ValueError, TypeError) as e:
        raise ResourceParseError(f"Invalid {name}: {e}") from e


def to_fhir_json(resource: BaseModel) -> str:
    return resource.model_dump_json(by_alias=True, exclude_none=True)


def to_fhir_dict(resource: BaseModel) -> Dict[str, Any]:
    return json.loads(to_fhir_json(resource))


def bundle_entry(resource: BaseModel, full_url: Optional[str] = None) -> BundleEntry:
    """Wrap a resource in a Bundle.entry."""
    if full_url:
        return BundleEntry(fullUrl=full_url, resource=resource)
    return BundleEntry(resource=resource)


def build_bundle(bundle_type: str, entries: List[BundleEntry], total: Optional[int] = None) -> Bundle:
    return Bundle(type=bundle_type, total=total, entry=entries or None)


def bundle_resources(bundle: Bundle) -> Iterator[BaseModel]:
    """Entry resources in bundle order, skipping entries without one."""
    for entry in bundle.entry or []:
        if entry.resource is not None:
            yield entry.resource


def create_parameter(name: str, value=None, part: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Build a Parameters.parameter element.

    Numbers become ``valueInteger``, anything else ``valueString``. The
    element is a plain dict so it can nest under ``part`` as well as
    ``parameter``; Parameters validates it.
    """
    parameter: Dict[str, Any] = {"name": name}
    if isinstance(value, Number) and not isinstance(value, bool):
        parameter["valueInteger"] = int(value)
    elif value is not None and str(value):
        parameter["valueString"] = str(value)
    if part:
        parameter["part"] = part
    return parameter


def build_parameters(parameters: List[Dict[str, Any]]) -> Parameters:
    return Parameters.model_validate({"resourceType": "Parameters", "parameter": parameters})


def operation_outcome(code: str, diagnostics: str, severity: str = "error") -> OperationOutcome:
    return OperationOutcome.model_validate({
        "resourceType": "OperationOutcome",
        "issue": [{"severity": severity, "code": code, "diagnostics": diagnostics}],
    })
