"""
Boundary ingestion pipeline.

Keeps the countries table in sync with OpenStreetMap country and maritime
boundary relations fetched from the Overpass API.

Subpackages:
    extractors: Overpass download client and boundary discovery
    transformers: Format validation and Overpass JSON to GeoJSON conversion
    loaders: Staging import, geometry repair, capital check, upsert, snapshot

Modules:
    context: Run-wide pipeline context shared by all workers
    overrides: Per-boundary override table
    reconciliation: Snapshot versus authoritative id list
    pipeline: Per-boundary state machine
    orchestrator: Parallel workers and JobStatus aggregation
    ledger: Failure ledger
    runner: Run lifecycle per boundary kind
    scheduler: Monthly update job

Usage:
    from boundaries.runner import run_update
    from models.base import BoundaryKind

    results = await run_update([BoundaryKind.COUNTRY])
"""

__all__ = [
    "PipelineContext",
    "BoundaryPipeline",
    "ParallelOrchestrator",
    "BoundaryUpdateRunner",
    "run_update",
]
