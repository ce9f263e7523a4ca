"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for the values flowing through the
boundary pipeline and for the API responses:

Schemas:
    boundary: Overrides, CountryRecord, FailureRecord, BoundaryOutcome, JobStatus
    api: Health, country, run and failure responses

Features:
    - Automatic data validation
    - Name trimming and defaulting for the VARCHAR(100) name columns
    - JSON serialization of failure ledger entries
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.boundary import CountryRecord, ContainmentStatus
    from schemas.api import HealthCheckResponse, CountryListResponse

Example:
    record = CountryRecord(
        country_id=16239,
        country_name="Österreich",
        country_name_en="Austria",
        geometry_ewkb=ewkb,
        area_m2=83_879_000_000.0,
        containment=ContainmentStatus.PASSED
    )

    # Missing Spanish name falls back to the primary name
    assert record.country_name_es == "Österreich"
"""

__all__ = [
    "BoundaryOverride",
    "OverrideTable",
    "CountryRecord",
    "FailureRecord",
    "BoundaryOutcome",
    "JobStatus",
    "HealthCheckResponse",
    "CountryListResponse",
    "CountryDetail",
    "RunListResponse",
    "RunFailuresResponse",
]
