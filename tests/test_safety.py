"""Tests for write gating."""

import pytest

from ev3_firmware_flasher.core.safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    WritePermissionError,
    require_write_permission,
)


def test_simulate_always_allowed() -> None:
    require_write_permission(SafetyContext(simulate=True))


def test_write_flag_required() -> None:
    ctx = SafetyContext(model_detected="EV3-Recovery", confirmation_token="WRITE")
    with pytest.raises(WritePermissionError, match="explicit permission"):
        require_write_permission(ctx, image_size=100)


def test_unknown_model_denied() -> None:
    ctx = SafetyContext(write_enabled=True, model_detected="", confirmation_token="WRITE")
    with pytest.raises(WritePermissionError, match="unknown model"):
        require_write_permission(ctx)


def test_firmware_mode_denied() -> None:
    ctx = SafetyContext(write_enabled=True, model_detected="EV3", confirmation_token="WRITE")
    with pytest.raises(WritePermissionError, match="not in recovery mode"):
        require_write_permission(ctx)


def test_token_case_insensitive() -> None:
    ctx = SafetyContext(
        write_enabled=True, model_detected="ev3-recovery", confirmation_token=" write "
    )
    require_write_permission(ctx, image_size=100)


def test_token_mismatch() -> None:
    ctx = SafetyContext(
        write_enabled=True, model_detected="EV3-Recovery", confirmation_token="YES"
    )
    with pytest.raises(WritePermissionError, match="token mismatch"):
        require_write_permission(ctx)


def test_non_interactive_without_token() -> None:
    ctx = SafetyContext(write_enabled=True, model_detected="EV3-Recovery", interactive=False)
    with pytest.raises(WritePermissionError, match="requires confirmation_token"):
        require_write_permission(ctx)


def test_interactive_prompt_accepts_token() -> None:
    shown = []
    ctx = SafetyContext(
        write_enabled=True,
        model_detected="EV3-Recovery",
        prompt_confirmation=lambda text: CONFIRMATION_TOKEN,
        show_details=shown.append,
    )
    require_write_permission(ctx, image_size=2037)
    assert shown == [{"model": "EV3-Recovery", "image_size": 2037}]


def test_interactive_prompt_rejects_other_input() -> None:
    ctx = SafetyContext(
        write_enabled=True,
        model_detected="EV3-Recovery",
        prompt_confirmation=lambda text: "no",
    )
    with pytest.raises(WritePermissionError, match="aborted by user") as exc_info:
        require_write_permission(ctx, image_size=10)
    assert exc_info.value.details["image_size"] == 10


def test_interactive_without_prompt_handler() -> None:
    ctx = SafetyContext(write_enabled=True, model_detected="EV3-Recovery")
    with pytest.raises(WritePermissionError, match="no prompt handler"):
        require_write_permission(ctx)
