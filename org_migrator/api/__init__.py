"""HTTP API for the migration orchestrator."""
