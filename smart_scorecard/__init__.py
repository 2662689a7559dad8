"""SMART on FHIR app that scores the completeness of a patient record."""

__version__ = "1.0.0"
