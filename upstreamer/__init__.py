"""Bridge messages between transports through forwarding rules between endpoints."""

__version__ = "0.1.0"

__all__ = [
    "protocol",
    "endpoint",
    "static_subscription",
    "forwarding",
    "streamer",
    "mock_transports",
    "test_messages",
]