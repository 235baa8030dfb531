"""HTTP, Server-Sent Events and WebSocket surface for Ralph."""
