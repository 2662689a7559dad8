"""FHIR ``$completeness`` operation.

Accepts a Parameters resource carrying a ``record`` Bundle and an optional
``ig`` code, scores the Bundle and answers with a Parameters resource:

    score   (valueInteger)           total points
    rubric  (one per rubric)
        part score       (valueInteger)
        part category    (valueString)  rubric name
        part description (valueString)  rubric message

Invalid input is answered with a 422 OperationOutcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

from pydantic import BaseModel

from . import config
from .exceptions import ProtocolInputError
from .fhir_models import (
    Bundle,
    OperationOutcome,
    Parameters,
    ResourceParseError,
    build_parameters,
    create_parameter,
    operation_outcome,
    parse_resource,
    resource_type,
    to_fhir_json,
)
from .scorecard import IgProfile, score_bundle

logger = logging.getLogger(__name__)

NOT_SUPPORTED_DIAGNOSTICS = (
    "The content-type `{content_type}` is not supported. "
    "This service only supports `application/fhir+json`."
)
REQUIRED_DIAGNOSTICS = (
    "This operation requires a FHIR Parameters Resource containing a single "
    "parameter named `record` containing a FHIR Bundle."
)

Engine = Callable[[str, IgProfile], Dict]


@dataclass(frozen=True)
class ValidCompletenessRequest:
    record: Bundle
    profile: IgProfile = IgProfile.NONE


@dataclass(frozen=True)
class InvalidShape:
    reason: str


def _check_shape(resource: BaseModel) -> ValidCompletenessRequest:
    if not isinstance(resource, Parameters):
        raise ProtocolInputError(f"Expected Parameters, got {resource_type(resource)}")

    parameters = resource.parameter or []
    if not 1 <= len(parameters) <= 2:
        raise ProtocolInputError(f"Expected 1 or 2 parameters, got {len(parameters)}")

    record = parameters[0]
    if record.name != "record":
        raise ProtocolInputError(f"First parameter must be named record, got {record.name}")
    if not isinstance(record.resource, Bundle):
        raise ProtocolInputError("The record parameter must carry a Bundle")

    profile = IgProfile.NONE
    if len(parameters) == 2:
        ig = parameters[1]
        if ig.name != "ig":
            raise ProtocolInputError(f"Second parameter must be named ig, got {ig.name}")
        if ig.valueCode:
            profile = IgProfile.from_code(ig.valueCode)
            if profile is IgProfile.UNRECOGNIZED:
                logger.info(f"Unrecognized ig code {ig.valueCode!r}; scoring without a guide")

    return ValidCompletenessRequest(record=record.resource, profile=profile)


def decode_request(raw_body: Union[str, bytes]) -> Union[ValidCompletenessRequest, InvalidShape]:
    """Decode a request body into a valid request or the reason it is not one."""
    try:
        return _check_shape(parse_resource(raw_body))
    except ResourceParseError as e:
        logger.warning("Failed to parse request to $completeness service.")
        logger.warning(str(e))
        return InvalidShape(reason=str(e))
    except ProtocolInputError as e:
        logger.warning(f"Rejected $completeness request: {e.message}")
        return InvalidShape(reason=e.message)


def build_response(report: Dict) -> Parameters:
    """Turn a scorecard report into the operation's Parameters output."""
    report = dict(report)
    parameters = [create_parameter("score", report.pop("points", 0))]
    for rubric, data in report.items():
        parameters.append(create_parameter("rubric", part=[
            create_parameter("score", data["points"]),
            create_parameter("category", str(rubric)),
            create_parameter("description", data["message"]),
        ]))
    return build_parameters(parameters)


def handle(
    content_type: Optional[str],
    raw_body: Union[str, bytes],
    engine: Engine = score_bundle,
) -> Tuple[int, Union[Parameters, OperationOutcome]]:
    """Run the operation; returns ``(status_code, resource)``."""
    request = decode_request(raw_body)

    if not (content_type or "").startswith(config.CONTENT_TYPE):
        # We only support JSON
        diagnostics = NOT_SUPPORTED_DIAGNOSTICS.format(content_type=content_type or "")
        return 422, operation_outcome("not-supported", diagnostics)

    if isinstance(request, InvalidShape):
        return 422, operation_outcome("required", REQUIRED_DIAGNOSTICS)

    report = engine(to_fhir_json(request.record), request.profile)
    return 200, build_response(report)
