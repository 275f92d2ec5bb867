"""
Core module initialization.
Exports configuration, error taxonomy and result utilities.
"""

from hungerwood.core.config import get_settings, Settings, EnvironmentMode
from hungerwood.core.exceptions import OrderCoreError
from hungerwood.core.results import OperationResult, capture

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "OrderCoreError",
    "OperationResult",
    "capture",
]
