"""
messages — Message queue, delivery engine and webhook transport.

Sub-modules:
    models            — Domain data structures (Message, DeliveryOutcome, ...)
    orm               — SQLAlchemy table mapping
    repository        — Atomic status transitions, listings and counts
    transport         — Delivery webhook client
    delivery_service  — Per-message delivery pipeline and service facade
    seed              — Sample data for local development
"""
