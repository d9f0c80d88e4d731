"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    middleware  — request logging & correlation IDs
    security    — per-route-group API key checks
    health      — health check aggregation
    database    — async SQLAlchemy engine & sessions
    cache       — Redis sent-message cache
"""
