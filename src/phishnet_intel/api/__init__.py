# API Module - HTTP trigger and query surface

from .main import create_app, start_api_server
from .routes import get_service, router, set_service
from .security import initialize_admin_token, verify_admin_token

__all__ = [
    "create_app",
    "start_api_server",
    "router",
    "get_service",
    "set_service",
    "initialize_admin_token",
    "verify_admin_token",
]
