"""
Core module initialization.
Exports configuration, errors and the capability table.
"""

from ordering.core.config import get_settings, Settings, EnvironmentMode
from ordering.core.errors import OrderingError
from ordering.core.permissions import Role, DietPartition, Action

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "OrderingError",
    "Role",
    "DietPartition",
    "Action",
]
