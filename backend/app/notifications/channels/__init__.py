"""
channels — Per-channel delivery backends.

Each channel module exposes:
    send(notification, contact, *, provider=..., timeout_seconds=...) → ChannelAttempt

Channels are stateless functions. A missing address returns a SKIPPED
attempt; provider errors raise ChannelDeliveryFailure. Concurrency,
timeouts and failure isolation live in the dispatcher.
"""
