"""
Core module for EV3 Firmware Flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Result objects (results.py)
- Unified version/erase/flash workflows (actions.py)

Front ends should call into this module rather than implementing their
own logic.
"""

from .safety import (
    SafetyContext,
    require_write_permission,
    WritePermissionError,
    CONFIRMATION_TOKEN,
    create_cli_safety_context,
)
from .results import OperationResult
from .actions import (
    read_version,
    enter_update_mode,
    erase_chip,
    flash_firmware,
    checksum_file,
    dry_run_plan,
)

__all__ = [
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    "CONFIRMATION_TOKEN",
    "create_cli_safety_context",
    # Results
    "OperationResult",
    # Actions
    "read_version",
    "enter_update_mode",
    "erase_chip",
    "flash_firmware",
    "checksum_file",
    "dry_run_plan",
]
