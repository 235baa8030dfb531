"""
API dependencies module.

Dependency functions handing the shared server objects (created once in
the application lifespan and kept on ``app.state``) to route handlers.
"""

from fastapi import Request

from ralph.api.config import APIConfig
from ralph.api.run_manager import RunManager
from ralph.events import EventBus
from ralph.registry import PlanRegistry


def get_api_config(request: Request) -> APIConfig:
    """
    Dependency for providing the API configuration.

    Returns:
        APIConfig: The configuration the application was created with
    """
    return request.app.state.config


def get_registry(request: Request) -> PlanRegistry:
    return request.app.state.registry


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_run_manager(request: Request) -> RunManager:
    return request.app.state.runs
