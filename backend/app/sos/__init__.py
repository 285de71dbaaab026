"""
sos — SOS signal triage.

Sub-modules:
    models       — Signal record, enums, transition table, invariants
    repository   — SignalRepository contract + in-memory store
    responders   — Responder directory contract + in-memory directory
    coordinator  — assign / update_status / escalate / intake
    escalation   — Time-based escalation sweep + scheduler
    clustering   — Spatial grouping of active signals
    analytics    — Dashboard, analytics and per-responder views
"""
