"""
notifications — Responder notification delivery.

Sub-modules:
    channels/    — Per-channel delivery backends (email, SMS, push)
    dispatcher   — Event fan-out: in-app write + concurrent channel sends
    store        — Per-responder in-app inbox
    models       — Notification, event and delivery report structures
"""
