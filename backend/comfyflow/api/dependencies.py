"""
FastAPI dependencies that hand route handlers the objects created in the
application lifespan (see comfyflow.main).
"""

from fastapi import Request

from comfyflow.config import Settings
from comfyflow.services.execution_monitor import ExecutionMonitor
from comfyflow.services.graph_store import GraphStore
from comfyflow.services.queue_controller import QueueController


def get_graph_store(request: Request) -> GraphStore:
    return request.app.state.graph_store


def get_monitor(request: Request) -> ExecutionMonitor:
    return request.app.state.monitor


def get_queue_controller(request: Request) -> QueueController:
    return request.app.state.queue_controller


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
