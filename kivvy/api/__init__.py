"""Kivvy HTTP surface."""

from kivvy.api.routes import QueueActionRequest, create_queue_router, setup_queue_routes

__all__ = ["QueueActionRequest", "create_queue_router", "setup_queue_routes"]
