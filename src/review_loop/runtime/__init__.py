"""Review loop runtime: domain models, orchestration, and storage."""
