"""TCP, WebSocket and RFCOMM link transports, network helpers, a speed test and formatting helpers."""

__version__ = "0.9.7"
__all__ = ["fmt", "netutil", "rfcomm", "speed", "tcp", "websocket"]