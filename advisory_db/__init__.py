"""
Advisory database ingestion

Keeps a normalized document store in sync with the CVE list corpus: one JSON advisory per
file, legacy 4.x and 5.x record formats side by side.

Architecture:
- config/: Settings and database connection helpers
- db/: Document store interface and its PostgreSQL implementation
- sources/base/: Record normalization, entity resolution and advisory persistence
- sources/cvelist/: Git-backed corpus source and change set resolution
- orchestration/: Batch coordinator and the top-level sync run
- queries.py: Secondary lookups over ingested data

Usage:
    from advisory_db.orchestration.cvelist_orchestrator import CveListOrchestrator

    async with CveListOrchestrator() as orchestrator:
        report = await orchestrator.run("incremental")
"""

__version__ = "0.1.0"
