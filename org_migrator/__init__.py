"""
Org Migrator

Orchestration core for migrating records between two organisations of a
Salesforce-style data platform using declarative, multi-step ETL templates.

Supports:
- A frozen catalog of migration templates with dependency-ordered steps
- Pre-flight validation against live source and target metadata
- OAuth token lifecycle with single-flight refresh per organisation
- Dependency-aware execution with per-record outcomes and progress snapshots
- Rollback of records created by a previous run
"""

__version__ = "0.1.0"
