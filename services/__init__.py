"""Service layer for the timeslice update engine.

Services encapsulate the update logic, keeping the CLI and scheduler thin.
This separation provides:
- Grid shape rules in one place (timeslice manager)
- Orchestration of multiple repositories per course run
- Isolation of per-wiki and per-window failures

Layer hierarchy:
    CLI / scheduler -> Services (update logic) -> Repositories (Database)

Services should:
- Contain the grid, fetch and aggregation rules
- Orchestrate calls to repositories
- Return dataclasses or schemas (not ORM models) where appropriate

Services should NOT:
- Directly execute SQL queries (use repositories)
- Share mutable state between course runs
"""
