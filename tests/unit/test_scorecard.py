"""Unit tests for the completeness scorecard engine."""

from __future__ import annotations

import json

import pytest

from smart_scorecard.scorecard import IgProfile, Scorecard, score_bundle

BASE_RUBRICS = [
    "patient_record",
    "codes_exist",
    "references_resolve",
    "vital_signs",
    "smoking_status",
    "condition_coding",
    "medication_coding",
]


def _bundle(*resources) -> str:
    return json.dumps({"resourceType": "Bundle", "entry": [{"resource": r} for r in resources]})


def _observation(loinc: str) -> dict:
    return {
        "resourceType": "Observation",
        "status": "final",
        "code": {"coding": [{"system": "http://loinc.org", "code": loinc}]},
        "subject": {"reference": "Patient/p-001"},
    }


class TestReportShape:
    def test_base_rubrics_in_order(self, record_bundle) -> None:
        report = Scorecard().score(json.dumps(record_bundle))
        assert list(report) == BASE_RUBRICS + ["points"]

    def test_total_is_sum_of_rubrics(self, record_bundle) -> None:
        report = Scorecard().score(json.dumps(record_bundle))
        assert report["points"] == sum(report[name]["points"] for name in BASE_RUBRICS)

    def test_points_are_bounded_integers(self, record_bundle) -> None:
        report = Scorecard().enable_us_core().enable_shr().score(json.dumps(record_bundle))
        for name, result in report.items():
            if name == "points":
                continue
            assert isinstance(result["points"], int)
            assert 0 <= result["points"] <= 10
            assert result["message"]

    def test_guides_append_rubrics(self, record_bundle) -> None:
        assert list(score_bundle(json.dumps(record_bundle), IgProfile.US_CORE))[-2] == "us_core"
        assert list(score_bundle(json.dumps(record_bundle), IgProfile.STANDARD_HEALTH_RECORD))[-2] == \
            "standard_health_record"

    @pytest.mark.parametrize("profile", [IgProfile.NONE, IgProfile.UNRECOGNIZED])
    def test_no_guide(self, record_bundle, profile) -> None:
        assert list(score_bundle(json.dumps(record_bundle), profile)) == BASE_RUBRICS + ["points"]

    def test_pure_function(self, record_bundle) -> None:
        bundle_json = json.dumps(record_bundle)
        assert score_bundle(bundle_json, IgProfile.US_CORE) == score_bundle(bundle_json, IgProfile.US_CORE)


class TestRubrics:
    def test_patient_record(self, patient) -> None:
        assert Scorecard().score(_bundle(patient))["patient_record"]["points"] == 10
        assert Scorecard().score(_bundle())["patient_record"]["points"] == 0
        assert Scorecard().score(_bundle(patient, patient))["patient_record"]["points"] == 0

    def test_codes_exist(self, record_bundle) -> None:
        # 2 of 3 CodeableConcepts carry system + code
        result = Scorecard().score(json.dumps(record_bundle))["codes_exist"]
        assert result["points"] == 7
        assert "2 of 3" in result["message"]

    def test_references_resolve(self, patient) -> None:
        dangling = {"resourceType": "Condition", "patient": {"reference": "Patient/other"}}
        local = {"resourceType": "Condition", "patient": {"reference": "Patient/p-001"}}
        result = Scorecard().score(_bundle(patient, dangling, local))["references_resolve"]
        assert result["points"] == 5

    def test_no_references_scores_full(self, patient) -> None:
        assert Scorecard().score(_bundle(patient))["references_resolve"]["points"] == 10

    def test_vital_signs(self, patient) -> None:
        result = Scorecard().score(_bundle(patient, _observation("8867-4"), _observation("8310-5")))["vital_signs"]
        assert result["points"] == 2
        assert "2 of 8" in result["message"]
        assert "respiratory rate" in result["message"]

    def test_smoking_status(self, patient) -> None:
        assert Scorecard().score(_bundle(patient, _observation("72166-2")))["smoking_status"]["points"] == 10
        assert Scorecard().score(_bundle(patient))["smoking_status"]["points"] == 0

    def test_condition_coding(self, record_bundle) -> None:
        assert Scorecard().score(json.dumps(record_bundle))["condition_coding"]["points"] == 5

    def test_medication_coding_follows_reference(self, patient) -> None:
        medication = {
            "resourceType": "Medication",
            "id": "med-1",
            "code": {"coding": [{"system": "http://www.nlm.nih.gov/research/umls/rxnorm", "code": "1"}]},
        }
        order = {"resourceType": "MedicationOrder", "medicationReference": {"reference": "Medication/med-1"}}
        assert Scorecard().score(_bundle(patient, medication, order))["medication_coding"]["points"] == 10

    def test_us_core_choice_elements(self, patient, medication_orders) -> None:
        order = dict(medication_orders[0], dateWritten="2017-01-01")
        report = Scorecard().enable_us_core().score(_bundle(patient, order))
        assert report["us_core"]["points"] == 10

    def test_shr_profiles(self, patient) -> None:
        profiled = dict(patient, meta={"profile": ["http://standardhealthrecord.org/fhir/StructureDefinition/shr-entity-Patient"]})
        condition = {"resourceType": "Condition"}
        report = Scorecard().enable_shr().score(_bundle(profiled, condition))
        assert report["standard_health_record"]["points"] == 5


class TestIgProfile:
    @pytest.mark.parametrize("code, profile", [
        (None, IgProfile.NONE),
        ("us_core", IgProfile.US_CORE),
        ("standard_health_record", IgProfile.STANDARD_HEALTH_RECORD),
        ("US_CORE", IgProfile.UNRECOGNIZED),
        ("", IgProfile.UNRECOGNIZED),
    ])
    def test_from_code(self, code, profile) -> None:
        assert IgProfile.from_code(code) is profile
