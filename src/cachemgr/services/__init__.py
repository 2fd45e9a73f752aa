"""Service facades built on the orchestrator."""
