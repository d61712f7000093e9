"""
Safety context and write gating for flash operations.

Centralizes all confirmation and gating rules so every front end enforces
identical checks before the brick's flash is erased or rewritten.
"""

import sys
from dataclasses import dataclass
from typing import Optional, Callable

from ..models import DeviceMode, get_model

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (model, image size, etc.)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Safety context for write operations.

    Attributes:
        write_enabled: Whether the --write flag was provided
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the UI can prompt for confirmation
        model_detected: Registry name of the connected device
        simulate: Whether this is a dry run (nothing is sent)
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    model_detected: str = ""
    simulate: bool = False

    # Callbacks for interactive prompts
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    @property
    def is_model_unknown(self) -> bool:
        """Check if model is unknown or empty."""
        return get_model(self.model_detected or "") is None

    @property
    def is_recovery_mode(self) -> bool:
        model = get_model(self.model_detected or "")
        return model is not None and model.mode == DeviceMode.RECOVERY

    def to_details_dict(self, image_size: int = 0) -> dict:
        """Create a details dictionary for display."""
        return {
            "model": self.model_detected or "Unknown",
            "image_size": image_size,
        }


def require_write_permission(ctx: SafetyContext, image_size: int = 0) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. If simulate mode: always allowed (no actual write)
    2. If write not enabled: raise with instructions
    3. If the device is not a recovery-mode EV3: deny
    4. If confirmation token present: must match exactly
    5. If interactive: prompt user for confirmation

    Args:
        ctx: Safety context with all required information
        image_size: Number of bytes about to be written (0 for a bare erase)

    Raises:
        WritePermissionError: If write is not permitted
    """
    details = ctx.to_details_dict(image_size)

    # Rule 1: Simulation mode is always allowed
    if ctx.simulate:
        return

    # Rule 2: Write must be explicitly enabled
    if not ctx.write_enabled:
        raise WritePermissionError(
            "Write operation requires explicit permission. "
            "CLI: use --write flag.",
            details=details,
        )

    # Rule 3: Only the recovery bootloader accepts erase/download
    if ctx.is_model_unknown:
        raise WritePermissionError(
            "Cannot write to device with unknown model. "
            "The USB id did not match any known EV3 identity.",
            details=details,
        )
    if not ctx.is_recovery_mode:
        raise WritePermissionError(
            f"Device '{ctx.model_detected}' is not in recovery mode. "
            "Run enter-update first, or hold Right + Center while powering on.",
            details=details,
        )

    # Rule 4: Token-based confirmation for non-interactive
    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    # Rule 5: Interactive confirmation required
    if ctx.interactive:
        if ctx.show_details:
            ctx.show_details(details)

        if ctx.prompt_confirmation:
            user_input = ctx.prompt_confirmation(
                f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
            )
            if user_input.strip().upper() != CONFIRMATION_TOKEN:
                raise WritePermissionError(
                    "Confirmation failed. Write aborted by user.",
                    details=details,
                )
        else:
            raise WritePermissionError(
                "Interactive confirmation required but no prompt handler set. "
                "Provide confirmation_token for non-interactive mode.",
                details=details,
            )
    else:
        raise WritePermissionError(
            "Non-interactive mode requires confirmation_token.",
            details=details,
        )


def create_cli_safety_context(
    write_flag: bool,
    model: str = "",
    simulate: bool = False,
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """
    Create a SafetyContext configured for CLI usage.

    If confirmation_token is None and we're in a TTY, the context is
    marked interactive; the caller installs the prompt callbacks.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None

    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        model_detected=model,
        simulate=simulate,
    )
