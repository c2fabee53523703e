"""
Status and deployment API for the fleet controller
"""

from .api_dependencies import initialize_dependencies
from .api_routes import create_app, initialize_app_with_config

__all__ = [
    "create_app",
    "initialize_dependencies",
    "initialize_app_with_config",
]
