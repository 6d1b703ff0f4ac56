"""fhirlink provider integration core."""

__version__ = "0.1.0"
