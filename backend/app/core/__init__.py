"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables, settings & TriageConfig
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    middleware  — request logging & correlation IDs
    health      — health check aggregation
    services    — engine wiring for the app lifespan
"""
