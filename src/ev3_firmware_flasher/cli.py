"""
EV3 Firmware Flasher CLI

Command-line interface for recovery-mode firmware updates with write gating.
"""

import sys
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Tuple

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from ev3_firmware_flasher.config import FlasherConfig, DEFAULT_REPLY_TIMEOUT, DEFAULT_ERASE_TIMEOUT
from ev3_firmware_flasher.errors import FlasherError, HidTransportError
from ev3_firmware_flasher.events import ProgressEvent, STAGE_WRITE_PROCESS
from ev3_firmware_flasher.protocol.hid_transport import HidTransport, enumerate_devices
from ev3_firmware_flasher.upgrader import FirmwareUpgrader
from ev3_firmware_flasher.core.safety import (
    SafetyContext,
    require_write_permission,
    WritePermissionError,
    CONFIRMATION_TOKEN,
    create_cli_safety_context,
)
from ev3_firmware_flasher.core.results import OperationResult
from ev3_firmware_flasher.core.actions import (
    read_version as core_read_version,
    enter_update_mode as core_enter_update_mode,
    erase_chip as core_erase_chip,
    flash_firmware as core_flash_firmware,
    checksum_file as core_checksum_file,
    dry_run_plan as core_dry_run_plan,
)
from ev3_firmware_flasher.models import (
    LEGO_VENDOR_ID,
    DeviceMode,
    list_models as registry_list_models,
    detect_model as registry_detect_model,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("ev3_firmware_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="EV3 Firmware Flasher - recovery-mode firmware updates over USB HID")

VID_HELP = "USB vendor id (decimal or 0x hex)"
PID_HELP = "USB product id (decimal or 0x hex)"
PATH_HELP = "hidapi device path (overrides VID/PID)"


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_result(result: OperationResult) -> None:
    """Print warnings and errors collected in an OperationResult."""
    for warning in result.warnings:
        print_warning(warning)
    for error in result.errors:
        print_error(error)


def parse_int(value: Optional[str], label: str) -> Optional[int]:
    """Parse an integer from string (supports decimal and hex)."""
    if value is None:
        return None
    try:
        if value.startswith("0x") or value.startswith("0X"):
            return int(value, 16)
        return int(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid {label}: {value}")


def resolve_target(
    vid: Optional[str],
    pid: Optional[str],
    path: Optional[str],
    default_mode: DeviceMode,
) -> Tuple[int, int, Optional[str]]:
    """
    Work out which device to open and which registry model it is.

    VID/PID default to the registry entry for ``default_mode``. With a path,
    the VID/PID are looked up from enumeration when possible.

    Returns:
        (vendor_id, product_id, model_name or None)
    """
    default_model = next(m for m in registry_list_models() if m.mode == default_mode)
    vendor_id = parse_int(vid, "VID")
    product_id = parse_int(pid, "PID")

    if path is not None and vendor_id is None and product_id is None:
        try:
            for info in enumerate_devices():
                info_path = info.get("path", b"")
                if isinstance(info_path, bytes):
                    info_path = info_path.decode("utf-8", errors="replace")
                if info_path == path:
                    vendor_id = info.get("vendor_id")
                    product_id = info.get("product_id")
                    break
        except HidTransportError as e:
            logger.debug(f"Enumeration failed: {e}")

    if vendor_id is None:
        vendor_id = default_model.vendor_id
    if product_id is None:
        product_id = default_model.product_id

    model = registry_detect_model(vendor_id, product_id)
    return vendor_id, product_id, model.name if model else None


def build_config(**kwargs) -> FlasherConfig:
    """Build a FlasherConfig, reporting bad values as CLI parameter errors."""
    try:
        return FlasherConfig(**kwargs)
    except ValueError as e:
        raise typer.BadParameter(str(e))


@contextmanager
def connected_upgrader(
    vendor_id: int,
    product_id: int,
    path: Optional[str],
    config: Optional[FlasherConfig] = None,
) -> Iterator[FirmwareUpgrader]:
    """Open the device, yield a connected upgrader, always close."""
    config = config or FlasherConfig()
    try:
        transport = HidTransport(
            vendor_id=vendor_id,
            product_id=product_id,
            path=path.encode() if path is not None else None,
            report_size=config.report_size,
            read_size=config.read_size,
        )
        upgrader = FirmwareUpgrader(transport, config)
        upgrader.init()
        upgrader.connect()
    except HidTransportError as e:
        print_error(f"Could not open device {vendor_id:04X}:{product_id:04X}: {e}")
        sys.exit(1)

    try:
        yield upgrader
    finally:
        upgrader.close()


def confirm_write_with_details(
    write_flag: bool,
    model: Optional[str],
    image_size: int,
    confirm_token: Optional[str] = None,
    operation: str = "flash",
) -> SafetyContext:
    """
    Require explicit --write flag AND typed confirmation before any write.

    This is the CLI-specific wrapper around core.safety.require_write_permission.
    Uses Rich for display and typer.prompt for input.

    Supports three modes:
    1. Non-interactive (script): --confirm WRITE provided, no prompts
    2. Interactive (TTY): prompts user for typed confirmation
    3. Non-interactive without token: errors with remediation

    Returns:
        A SafetyContext already confirmed, to hand to the core action

    Raises:
        typer.Abort: If confirmation fails or write not permitted
    """
    ctx = create_cli_safety_context(
        write_flag=write_flag,
        model=model or "",
        confirmation_token=confirm_token,
    )

    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Model:         {details.get('model', 'Unknown')}\n"
            f"Operation:     {operation}\n"
            + (f"Bytes:         {details.get('image_size', 0):,}\n" if details.get("image_size") else "")
            + f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="EV3 Flash Operation",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt("Confirm")

    ctx.show_details = show_details
    ctx.prompt_confirmation = prompt_confirmation

    try:
        require_write_permission(ctx, image_size=image_size)
    except WritePermissionError as e:
        if "requires explicit permission" in str(e):
            console.print()
            print_error(f"{operation.capitalize()} requires --write flag.")
            console.print("This is a safety measure to prevent accidental writes to your brick.")
            console.print()
            console.print(f"  Model:         {model or 'Unknown'}")
            if image_size:
                console.print(f"  Bytes:         {image_size:,}")
        elif "non-interactive" in str(e).lower():
            print_error("Non-interactive environment detected but no confirmation token provided.")
            console.print("[bold]For scripted/non-interactive use, provide:[/bold]")
            console.print("  --write --confirm WRITE")
        elif "token mismatch" in str(e).lower():
            print_error("Confirmation token mismatch. Expected: --confirm WRITE")
        else:
            print_error(str(e))
        raise typer.Abort()

    print_success("Confirmation accepted. Proceeding with write...")
    return SafetyContext(
        write_enabled=True,
        confirmation_token=CONFIRMATION_TOKEN,
        interactive=False,
        model_detected=model or "",
    )


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log wire traffic (DEBUG)"),
) -> None:
    if verbose:
        logger.setLevel(logging.DEBUG)


@app.command()
def devices() -> None:
    """List attached LEGO HID devices."""
    print_header("Attached EV3 Devices")

    try:
        found = enumerate_devices(LEGO_VENDOR_ID)
    except HidTransportError as e:
        print_error(str(e))
        sys.exit(1)

    if not found:
        print_warning("No LEGO HID devices found")
        return

    table = Table(title="HID Devices")
    table.add_column("Path", style="cyan")
    table.add_column("VID:PID", style="magenta")
    table.add_column("Product", style="green")
    table.add_column("Model", style="yellow")

    for info in found:
        path = info.get("path", b"")
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        model = registry_detect_model(info.get("vendor_id", 0), info.get("product_id", 0))
        table.add_row(
            path,
            f"{info.get('vendor_id', 0):04X}:{info.get('product_id', 0):04X}",
            info.get("product_string") or "-",
            f"{model.name} ({model.mode.value})" if model else "unknown",
        )

    console.print(table)


@app.command("list-models")
def list_models() -> None:
    """List known EV3 USB identities."""
    print_header("Known EV3 Models")

    table = Table(title="Models")
    table.add_column("Model", style="cyan")
    table.add_column("VID:PID", style="magenta")
    table.add_column("Mode", style="yellow")
    table.add_column("Description", style="green")

    for model in registry_list_models():
        table.add_row(model.name, model.usb_id, model.mode.value, model.description)

    console.print(table)


@app.command()
def version(
    vid: Optional[str] = typer.Option(None, "--vid", help=VID_HELP),
    pid: Optional[str] = typer.Option(None, "--pid", help=PID_HELP),
    path: Optional[str] = typer.Option(None, "--path", help=PATH_HELP),
    timeout: float = typer.Option(DEFAULT_REPLY_TIMEOUT, "--timeout", help="Reply timeout (s)"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Read the recovery bootloader version."""
    if not output_json:
        print_header("EV3 Recovery Version")
    vendor_id, product_id, model = resolve_target(vid, pid, path, DeviceMode.RECOVERY)
    config = build_config(reply_timeout=timeout)

    with connected_upgrader(vendor_id, product_id, path, config) as upgrader:
        result = core_read_version(upgrader, model=model or "")

    if output_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    print_result(result)
    if not result.ok:
        sys.exit(1)

    table = Table(title="Version")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Model", model or "unknown")
    table.add_row("Hardware ID", str(result.metadata["hardware_id"]))
    table.add_row("Firmware ID", str(result.metadata["firmware_id"]))
    console.print(table)


@app.command("enter-update")
def enter_update(
    vid: Optional[str] = typer.Option(None, "--vid", help=VID_HELP),
    pid: Optional[str] = typer.Option(None, "--pid", help=PID_HELP),
    path: Optional[str] = typer.Option(None, "--path", help=PATH_HELP),
    timeout: float = typer.Option(DEFAULT_REPLY_TIMEOUT, "--timeout", help="Reply timeout (s)"),
) -> None:
    """Ask a brick running firmware to reboot into recovery mode."""
    print_header("Enter Firmware Update Mode")
    vendor_id, product_id, model = resolve_target(vid, pid, path, DeviceMode.FIRMWARE)
    config = build_config(reply_timeout=timeout)

    with connected_upgrader(vendor_id, product_id, path, config) as upgrader:
        result = core_enter_update_mode(upgrader, model=model or "")

    print_result(result)
    if not result.ok:
        sys.exit(1)
    print_success("Update mode requested")


@app.command()
def erase(
    vid: Optional[str] = typer.Option(None, "--vid", help=VID_HELP),
    pid: Optional[str] = typer.Option(None, "--pid", help=PID_HELP),
    path: Optional[str] = typer.Option(None, "--path", help=PATH_HELP),
    write: bool = typer.Option(False, "--write", help="Required flag to enable the erase"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE')",
    ),
    erase_timeout: float = typer.Option(DEFAULT_ERASE_TIMEOUT, "--erase-timeout", help="Erase reply timeout (s)"),
) -> None:
    """Erase the brick's entire flash (recovery mode only)."""
    print_header("Erase EV3 Flash")
    vendor_id, product_id, model = resolve_target(vid, pid, path, DeviceMode.RECOVERY)
    config = build_config(erase_timeout=erase_timeout)

    ctx = confirm_write_with_details(write, model, 0, confirm, operation="erase")

    with connected_upgrader(vendor_id, product_id, path, config) as upgrader:
        result = core_erase_chip(upgrader, ctx)

    print_result(result)
    if not result.ok:
        sys.exit(1)
    print_success("Flash erased")


@app.command()
def checksum(
    file: str = typer.Argument(..., help="Firmware image file"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Compute the CRC-32 of a firmware image (offline)."""
    result = core_checksum_file(file)
    if output_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    print_result(result)
    if not result.ok:
        sys.exit(1)

    table = Table(title="Checksum")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("File", file)
    table.add_row("Size", f"{result.bytes_len:,} bytes")
    table.add_row("CRC-32", result.checksums["image"])
    console.print(table)


@app.command()
def flash(
    file: str = typer.Argument(..., help="Firmware image file"),
    vid: Optional[str] = typer.Option(None, "--vid", help=VID_HELP),
    pid: Optional[str] = typer.Option(None, "--pid", help=PID_HELP),
    path: Optional[str] = typer.Option(None, "--path", help=PATH_HELP),
    write: bool = typer.Option(False, "--write", help="Required flag to enable actual write to the brick"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE' for write operations)",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the transfer plan without touching a device"),
    allow_checksum_mismatch: bool = typer.Option(
        False,
        "--allow-checksum-mismatch",
        help="Warn instead of failing when the device checksum differs",
    ),
    timeout: float = typer.Option(DEFAULT_REPLY_TIMEOUT, "--timeout", help="Reply timeout (s)"),
    erase_timeout: float = typer.Option(DEFAULT_ERASE_TIMEOUT, "--erase-timeout", help="Erase reply timeout (s)"),
) -> None:
    """
    Complete workflow: erase → download → verify checksum → restart.

    The brick must already be in recovery mode (see enter-update).
    """
    print_header("Flash EV3 Firmware")

    image_path = Path(file)
    if not image_path.is_file():
        print_error(f"Firmware file not found: {file}")
        sys.exit(1)
    image = image_path.read_bytes()
    if not image:
        print_error(f"Firmware file is empty: {file}")
        sys.exit(1)

    config = build_config(
        reply_timeout=timeout,
        erase_timeout=erase_timeout,
        strict_checksum=not allow_checksum_mismatch,
    )

    console.print(f"Firmware: {file}")
    console.print(f"Size: {len(image):,} bytes")

    if dry_run:
        result = core_dry_run_plan(image, config.chunk_size)
        print_result(result)
        table = Table(title="Transfer Plan (dry run)")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Erase range", f"0x00000000 + {len(image):,} bytes")
        table.add_row("Chunks", str(result.metadata["chunk_count"]))
        table.add_row("Chunk size", f"{result.metadata['chunk_size']} bytes")
        table.add_row("Final chunk", f"{result.metadata['final_chunk_size']} bytes")
        table.add_row("CRC-32", result.checksums["image"])
        console.print(table)
        print_success("Dry run complete - no device was touched")
        return

    vendor_id, product_id, model = resolve_target(vid, pid, path, DeviceMode.RECOVERY)
    ctx = confirm_write_with_details(write, model, len(image), confirm)

    with connected_upgrader(vendor_id, product_id, path, config) as upgrader:
        with Progress(
            TextColumn("[{task.description}]"),
            BarColumn(),
            TextColumn("[{task.percentage:.0f}%]"),
            console=console,
        ) as progress:
            task = progress.add_task("Preparing...", total=len(image))

            def on_progress(event: ProgressEvent) -> None:
                if event.stage == STAGE_WRITE_PROCESS and event.bytes_sent is not None:
                    progress.update(task, completed=event.bytes_sent, description="Downloading")
                else:
                    progress.update(task, description=event.stage)

            result = core_flash_firmware(upgrader, image, ctx, on_progress=on_progress)

    print_result(result)

    table = Table(title="Flash Results")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Model", result.model or "unknown")
    table.add_row("Image Size", f"{len(image):,} bytes")
    for name, value in result.checksums.items():
        table.add_row(f"CRC-32 ({name})", value)
    if "chunks_sent" in result.metadata:
        table.add_row("Chunks", str(result.metadata["chunks_sent"]))
    console.print(table)

    if not result.ok:
        sys.exit(1)
    print_success("Firmware flashed successfully! The brick is restarting.")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except (FlasherError, WritePermissionError) as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
