"""
Device registry for EV3 bricks.

Maps USB vendor/product ids to the brick's operating mode.
"""

from .registry import (
    LEGO_VENDOR_ID,
    DeviceMode,
    DeviceModel,
    list_models,
    get_model,
    detect_model,
    recovery_model,
)

__all__ = [
    "LEGO_VENDOR_ID",
    "DeviceMode",
    "DeviceModel",
    "list_models",
    "get_model",
    "detect_model",
    "recovery_model",
]
