"""
Device registry for EV3 bricks.

Provides a single source of truth for:
- USB identifiers (vendor id, product id) per brick mode
- Which command set a mode accepts (firmware vs. recovery bootloader)

Usage:
    from ev3_firmware_flasher.models import list_models, get_model, detect_model

    # List all known models
    models = list_models()

    # Get a model by name
    model = get_model("EV3-Recovery")

    # Detect model from an enumerated HID device
    model = detect_model(info["vendor_id"], info["product_id"])
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

LEGO_VENDOR_ID = 0x0694


class DeviceMode(Enum):
    """Which program the brick is running."""
    FIRMWARE = "firmware"   # Normal EV3 firmware, accepts ENTER_FW_UPDATE
    RECOVERY = "recovery"   # Recovery bootloader, accepts RECOVERY_* commands


@dataclass(frozen=True)
class DeviceModel:
    """One USB identity of an EV3 brick."""
    name: str
    vendor_id: int
    product_id: int
    mode: DeviceMode
    description: str = ""

    @property
    def usb_id(self) -> str:
        return f"{self.vendor_id:04X}:{self.product_id:04X}"

    @property
    def accepts_recovery_commands(self) -> bool:
        return self.mode == DeviceMode.RECOVERY


# ============================================================================
# MODEL REGISTRY - All known models
# ============================================================================

_MODEL_REGISTRY: Dict[str, DeviceModel] = {}


def _register_model(model: DeviceModel) -> None:
    _MODEL_REGISTRY[model.name] = model


def _init_registry() -> None:
    """Initialize the registry with known EV3 identities."""

    _register_model(DeviceModel(
        name="EV3",
        vendor_id=LEGO_VENDOR_ID,
        product_id=0x0005,
        mode=DeviceMode.FIRMWARE,
        description="EV3 brick running firmware (can be sent to update mode)",
    ))

    # Hold Right + Center while powering on to reach this mode
    _register_model(DeviceModel(
        name="EV3-Recovery",
        vendor_id=LEGO_VENDOR_ID,
        product_id=0x0006,
        mode=DeviceMode.RECOVERY,
        description="EV3 brick in recovery bootloader (firmware update mode)",
    ))


_init_registry()


def list_models() -> List[DeviceModel]:
    """
    List all registered models.

    Returns:
        Models sorted by name.
    """
    return [_MODEL_REGISTRY[name] for name in sorted(_MODEL_REGISTRY)]


def get_model(name: str) -> Optional[DeviceModel]:
    """
    Get a model by name.

    Args:
        name: Model name (case-insensitive)

    Returns:
        DeviceModel or None if not found.
    """
    wanted = name.strip().lower()
    for model in _MODEL_REGISTRY.values():
        if model.name.lower() == wanted:
            return model
    return None


def detect_model(vendor_id: int, product_id: int) -> Optional[DeviceModel]:
    """Match a USB vendor/product id pair against the registry."""
    for model in _MODEL_REGISTRY.values():
        if model.vendor_id == vendor_id and model.product_id == product_id:
            return model
    return None


def recovery_model() -> DeviceModel:
    return _MODEL_REGISTRY["EV3-Recovery"]
