"""HTTP, WebSocket and stream redirection core of a jailed program execution server."""

__version__ = "4.0.4"
__all__ = ["base64codec", "util", "httpsocket", "websocket", "redirector"]