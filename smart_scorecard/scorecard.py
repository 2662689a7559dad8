"""Completeness scorecard engine.

Scores a FHIR Bundle against a fixed list of rubrics. Each rubric yields
``{"points": int, "message": str}`` worth 0 to 10 points; the report is an
insertion-ordered dict of rubric name to result, followed by the ``points``
total. Scoring is a pure function of the bundle and the enabled guides.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

MAX_POINTS = 10

SNOMED = "http://snomed.info/sct"
ICD10 = ("http://hl7.org/fhir/sid/icd-10", "http://hl7.org/fhir/sid/icd-10-cm")
LOINC = "http://loinc.org"
RXNORM = "http://www.nlm.nih.gov/research/umls/rxnorm"
SHR_PROFILE_MARKER = "standardhealthrecord.org"

SMOKING_STATUS_CODE = "72166-2"
VITAL_SIGNS = {
    "body temperature": {"8310-5"},
    "heart rate": {"8867-4"},
    "respiratory rate": {"9279-1"},
    "blood pressure": {"85354-9", "55284-4", "8480-6", "8462-4"},
    "body weight": {"29463-7"},
    "body height": {"8302-2"},
    "body mass index": {"39156-5"},
    "oxygen saturation": {"2708-6", "59408-5"},
}

# element paths each guide expects on the clinical resources
US_CORE_MUST_SUPPORT = {
    "Patient": ("identifier", "name", "gender", "birthDate"),
    "Condition": ("code", "patient", "clinicalStatus", "verificationStatus", "category"),
    "MedicationOrder": ("status", "medication", "patient", "dateWritten"),
}


class IgProfile(Enum):
    """Implementation guide applied on top of the base rubrics."""

    NONE = None
    US_CORE = "us_core"
    STANDARD_HEALTH_RECORD = "standard_health_record"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "IgProfile":
        """Map an ``ig`` code to a profile; unknown codes apply no guide."""
        if code is None:
            return cls.NONE
        if code == cls.US_CORE.value:
            return cls.US_CORE
        if code == cls.STANDARD_HEALTH_RECORD.value:
            return cls.STANDARD_HEALTH_RECORD
        return cls.UNRECOGNIZED


def _percent_points(hits: int, total: int) -> int:
    if total == 0:
        return 0
    return int(round(MAX_POINTS * hits / total))


def _percent(hits: int, total: int) -> int:
    return int(round(100 * hits / total)) if total else 0


def _walk(value: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(value, dict):
        yield value
        for child in value.values():
            yield from _walk(child)
    elif isinstance(value, list):
        for child in value:
            yield from _walk(child)


def _codings(concept: Any) -> List[Dict[str, Any]]:
    if not isinstance(concept, dict):
        return []
    return [c for c in concept.get("coding") or [] if isinstance(c, dict)]


def _has_system(concept: Any, systems) -> bool:
    if isinstance(systems, str):
        systems = (systems,)
    return any(c.get("system") in systems and c.get("code") for c in _codings(concept))


def _has_element(resource: Dict[str, Any], element: str) -> bool:
    # choice elements such as medication[x] appear as medicationCodeableConcept etc.
    for key, value in resource.items():
        if value in (None, "", [], {}):
            continue
        if key == element:
            return True
        suffix = key[len(element):]
        if key.startswith(element) and suffix[:1].isupper():
            return True
    return False


def _loinc_codes(resource: Dict[str, Any]) -> set:
    return {c.get("code") for c in _codings(resource.get("code")) if c.get("system") == LOINC}


class Scorecard:
    """Computes the completeness report for one Bundle."""

    def __init__(self) -> None:
        self.us_core = False
        self.shr = False

    def enable_us_core(self) -> "Scorecard":
        self.us_core = True
        return self

    def enable_shr(self) -> "Scorecard":
        self.shr = True
        return self

    def rubrics(self) -> List[Tuple[str, Callable]]:
        rubrics = [
            ("patient_record", self.patient_record),
            ("codes_exist", self.codes_exist),
            ("references_resolve", self.references_resolve),
            ("vital_signs", self.vital_signs),
            ("smoking_status", self.smoking_status),
            ("condition_coding", self.condition_coding),
            ("medication_coding", self.medication_coding),
        ]
        if self.us_core:
            rubrics.append(("us_core", self.us_core_must_support))
        if self.shr:
            rubrics.append(("standard_health_record", self.shr_profiles))
        return rubrics

    def score(self, bundle_json: str) -> Dict[str, Any]:
        bundle = json.loads(bundle_json)
        resources = [
            entry["resource"]
            for entry in bundle.get("entry") or []
            if isinstance(entry, dict) and isinstance(entry.get("resource"), dict)
        ]
        full_urls = {
            entry["fullUrl"]
            for entry in bundle.get("entry") or []
            if isinstance(entry, dict) and entry.get("fullUrl")
        }

        report: Dict[str, Any] = {}
        total = 0
        for name, rubric in self.rubrics():
            points, message = rubric(resources, full_urls)
            report[name] = {"points": points, "message": message}
            total += points
        report["points"] = total
        logger.info(f"Scored bundle with {len(resources)} resources: {total} points")
        return report

    # Rubrics

    def patient_record(self, resources, full_urls):
        patients = [r for r in resources if r.get("resourceType") == "Patient"]
        if len(patients) == 1:
            return MAX_POINTS, "The record contains a single Patient."
        if not patients:
            return 0, "The record does not contain a Patient."
        return 0, f"The record contains {len(patients)} Patients; expected exactly one."

    def codes_exist(self, resources, full_urls):
        total = 0
        coded = 0
        for resource in resources:
            for node in _walk(resource):
                if "coding" in node:
                    total += 1
                    if any(c.get("system") and c.get("code") for c in _codings(node)):
                        coded += 1
        if total == 0:
            return 0, "No CodeableConcepts were found in the record."
        return (
            _percent_points(coded, total),
            f"{coded} of {total} CodeableConcepts ({_percent(coded, total)}%) have a coding with a system and code.",
        )

    def references_resolve(self, resources, full_urls):
        local_ids = {
            f"{r.get('resourceType')}/{r.get('id')}" for r in resources if r.get("id")
        }
        total = 0
        resolved = 0
        for resource in resources:
            contained = {f"#{c.get('id')}" for c in resource.get("contained") or [] if isinstance(c, dict)}
            for node in _walk(resource):
                reference = node.get("reference")
                if not isinstance(reference, str):
                    continue
                total += 1
                if (
                    reference in local_ids
                    or reference in full_urls
                    or reference in contained
                    or any(reference.endswith("/" + local) for local in local_ids)
                ):
                    resolved += 1
        if total == 0:
            return MAX_POINTS, "The record contains no references."
        return (
            _percent_points(resolved, total),
            f"{resolved} of {total} references ({_percent(resolved, total)}%) resolve within the record.",
        )

    def vital_signs(self, resources, full_urls):
        codes = set()
        for resource in resources:
            if resource.get("resourceType") == "Observation":
                codes |= _loinc_codes(resource)
        found = [name for name, loinc in VITAL_SIGNS.items() if codes & loinc]
        missing = [name for name in VITAL_SIGNS if name not in found]
        message = f"{len(found)} of {len(VITAL_SIGNS)} vital signs present."
        if missing:
            message += " Missing: " + ", ".join(missing) + "."
        return _percent_points(len(found), len(VITAL_SIGNS)), message

    def smoking_status(self, resources, full_urls):
        for resource in resources:
            if resource.get("resourceType") == "Observation" and SMOKING_STATUS_CODE in _loinc_codes(resource):
                return MAX_POINTS, "Smoking status is recorded."
        return 0, "Smoking status is not recorded."

    def condition_coding(self, resources, full_urls):
        conditions = [r for r in resources if r.get("resourceType") == "Condition"]
        if not conditions:
            return 0, "The record contains no Conditions."
        coded = sum(
            1 for c in conditions
            if _has_system(c.get("code"), SNOMED) or _has_system(c.get("code"), ICD10)
        )
        return (
            _percent_points(coded, len(conditions)),
            f"{coded} of {len(conditions)} Conditions are coded with SNOMED CT or ICD-10.",
        )

    def medication_coding(self, resources, full_urls):
        medications = {
            f"Medication/{r.get('id')}": r
            for r in resources if r.get("resourceType") == "Medication" and r.get("id")
        }
        orders = [
            r for r in resources
            if r.get("resourceType") in ("MedicationOrder", "MedicationRequest", "MedicationStatement")
        ]
        if not orders:
            return 0, "The record contains no medication orders."
        coded = 0
        for order in orders:
            concept = order.get("medicationCodeableConcept")
            reference = (order.get("medicationReference") or {}).get("reference")
            if reference in medications:
                concept = medications[reference].get("code")
            if _has_system(concept, RXNORM):
                coded += 1
        return (
            _percent_points(coded, len(orders)),
            f"{coded} of {len(orders)} medication orders are coded with RxNorm.",
        )

    def us_core_must_support(self, resources, full_urls):
        checks = 0
        present = 0
        for resource in resources:
            elements = US_CORE_MUST_SUPPORT.get(resource.get("resourceType"))
            if not elements:
                continue
            for element in elements:
                checks += 1
                if _has_element(resource, element):
                    present += 1
        if checks == 0:
            return 0, "No resources covered by US Core were found."
        return (
            _percent_points(present, checks),
            f"{present} of {checks} US Core must-support elements ({_percent(present, checks)}%) are populated.",
        )

    def shr_profiles(self, resources, full_urls):
        if not resources:
            return 0, "The record is empty."
        profiled = sum(
            1 for r in resources
            if any(SHR_PROFILE_MARKER in p for p in (r.get("meta") or {}).get("profile") or [])
        )
        return (
            _percent_points(profiled, len(resources)),
            f"{profiled} of {len(resources)} resources declare a Standard Health Record profile.",
        )


def score_bundle(bundle_json: str, profile: IgProfile = IgProfile.NONE) -> Dict[str, Any]:
    """Score a bundle with a fresh engine configured for ``profile``."""
    scorecard = Scorecard()
    if profile is IgProfile.US_CORE:
        scorecard.enable_us_core()
    elif profile is IgProfile.STANDARD_HEALTH_RECORD:
        scorecard.enable_shr()
    return scorecard.score(bundle_json)
