"""
RT-880 Flasher CLI

Command-line interface for firmware programming, HEX conversion and SPI
flash backup/restore.
"""

import sys
import logging
from pathlib import Path
from typing import Optional

import typer
import serial.tools.list_ports
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from rt880_flasher import __version__
from rt880_flasher.core.actions import (
    backup_spi as core_backup_spi,
    convert_hex as core_convert_hex,
    flash_firmware as core_flash_firmware,
    inspect_firmware as core_inspect_firmware,
    restore_spi as core_restore_spi,
)
from rt880_flasher.core.messages import MessageLevel, WarningItem, result_to_warnings
from rt880_flasher.core.parsing import parse_baud, parse_capacity, resolve_variant_name
from rt880_flasher.core.results import OperationResult
from rt880_flasher.core.safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    WritePermissionError,
    create_cli_safety_context,
    require_write_permission,
)
from rt880_flasher.models import (
    DEFAULT_SPI_PROFILE,
    RT880_LAYOUT,
    get_spi_profile,
    list_spi_profiles,
    list_variants,
)
from rt880_flasher.protocol import EventKind, SessionEvent

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("rt880_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="📻 RT-880 Radio Flasher - firmware programming and SPI flash backup")
spi_app = typer.Typer(help="Back up or restore the radio's external SPI flash")
app.add_typer(spi_app, name="spi")


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def report_result(result: OperationResult) -> None:
    """Print warnings/errors of a result; exit 1 if it failed."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=not result.ok)
    if not result.ok:
        sys.exit(1)


def confirm_write_or_exit(target: str, target_region: str, bytes_length: int, confirm_token: Optional[str]) -> None:
    """
    Gate a radio write on the CLI before any progress display starts.

    Non-interactive runs need ``--confirm WRITE``; a TTY gets a typed prompt.
    """
    ctx = create_cli_safety_context(target=target, confirmation_token=confirm_token)

    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Target:        {details.get('target', 'unknown')}\n"
            f"Region:        {details.get('target_region', 'unknown')}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Radio Write Operation",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt("Confirm")

    ctx.show_details = show_details
    ctx.prompt_confirmation = prompt_confirmation

    try:
        require_write_permission(ctx, target_region=target_region, bytes_length=bytes_length)
    except WritePermissionError as e:
        print_error(str(e))
        if not ctx.interactive and confirm_token is None:
            console.print("[bold]For scripted/non-interactive use, add:[/bold]  --confirm WRITE")
        sys.exit(1)
    print_success("Confirmation accepted. Proceeding with write...")


def confirmed_context(target: str) -> SafetyContext:
    """Context handed to core actions once the CLI has confirmed."""
    return SafetyContext(confirmation_token=CONFIRMATION_TOKEN, interactive=False, target=target)


def make_progress() -> Progress:
    return Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.completed}/{task.total}]"),
        console=console,
    )


@app.callback()
def cli_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show protocol traffic (DEBUG logs)"),
) -> None:
    """RT-880 Radio Flasher."""
    if verbose:
        logger.setLevel(logging.DEBUG)


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"rt880-flasher {__version__}")


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = sorted(serial.tools.list_ports.comports(), key=lambda p: p.device)
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    table.add_column("Hardware ID", style="magenta")

    for port in ports_list:
        table.add_row(port.device, port.description or "-", port.hwid or "-")

    console.print(table)


@app.command()
def variants() -> None:
    """List protocol variants and SPI flash profiles."""
    print_header("Supported Device Families")

    table = Table(title="Protocol Variants")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description", style="green")
    table.add_column("Connect", style="magenta")
    table.add_column("Update", style="magenta")
    table.add_column("End", style="magenta")
    table.add_column("Checksum +", justify="right")
    for variant in list_variants():
        table.add_row(
            variant.name,
            variant.description,
            variant.connect_seq.hex(" ").upper(),
            variant.update_seq.hex(" ").upper(),
            variant.end_seq.hex(" ").upper(),
            str(variant.checksum_offset),
        )
    console.print(table)

    table = Table(title="SPI Flash Profiles")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description", style="green")
    table.add_column("Blocks", justify="right")
    table.add_column("Capacity", justify="right")
    table.add_column("Checksum +", justify="right")
    for profile in list_spi_profiles():
        table.add_row(
            profile.name,
            profile.description,
            f"{profile.block_count:,}",
            f"{profile.capacity:,}",
            str(profile.command_checksum_offset),
        )
    console.print(table)


@app.command()
def flash(
    port: str = typer.Argument(..., help="Serial port (e.g., /dev/ttyUSB0, COM3)"),
    firmware: Path = typer.Argument(..., help="Firmware file (.hex or .bin)"),
    variant: Optional[str] = typer.Option(None, "--variant", help="Protocol variant: radtel (default) or iradio"),
    iradio: bool = typer.Option(False, "--iradio", help="Shortcut for --variant iradio"),
    baud: str = typer.Option("115200", "--baud", "-b", help="Baud rate"),
    strict: bool = typer.Option(False, "--strict", help="Reject HEX records with bad checksums"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Decode and validate only, no serial I/O"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Non-interactive confirmation token (WRITE)"),
) -> None:
    """Program firmware into the radio through its bootloader."""
    print_header("RT-880 Firmware Programming")

    try:
        variant_name = resolve_variant_name(variant, iradio)
        baud_rate = parse_baud(baud)
    except ValueError as e:
        print_error(str(e))
        sys.exit(1)

    console.print(f"Port:     {port}")
    console.print(f"Firmware: {firmware}")
    console.print(f"Variant:  {variant_name}")

    if dry_run:
        ctx = create_cli_safety_context(target=variant_name, dry_run=True)
        result = core_flash_firmware(port, firmware, ctx, variant=variant_name, baud=baud_rate, strict=strict)
        report_result(result)
        print_success(f"Dry run OK: {result.bytes_len:,} bytes, sha256 {result.hashes['sha256'][:16]}...")
        return

    region = f"0x{RT880_LAYOUT.base_address:08X}-0x{RT880_LAYOUT.end_address:08X}"
    confirm_write_or_exit(variant_name, region, RT880_LAYOUT.image_size, confirm)
    console.print("[dim]Power on the radio in bootloader mode now...[/dim]")

    with make_progress() as progress:
        task = progress.add_task("connecting", total=RT880_LAYOUT.block_count)

        def on_progress(done: int, total: int) -> None:
            progress.update(task, completed=done, total=total)

        def on_event(event: SessionEvent) -> None:
            if event.kind is EventKind.STATE:
                progress.update(task, description=event.state.value)

        result = core_flash_firmware(
            port,
            firmware,
            confirmed_context(variant_name),
            variant=variant_name,
            baud=baud_rate,
            strict=strict,
            progress_cb=on_progress,
            event_cb=on_event,
        )

    if not result.ok and result.stage:
        print_error(f"Programming failed during {result.stage}")
    report_result(result)

    session = result.metadata.get("session", {})
    table = Table(title="Programming Summary")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Variant", result.variant)
    table.add_row("Blocks", f"{session.get('blocks_acked', 0)}/{session.get('blocks_total', 0)}")
    table.add_row("Retransmissions", str(session.get("retransmissions", 0)))
    table.add_row("Elapsed", f"{session.get('elapsed', 0.0):.1f}s")
    table.add_row("SHA256", result.hashes.get("sha256", "-"))
    console.print(table)
    print_success("Firmware programmed successfully")


@app.command()
def inspect(
    firmware: Path = typer.Argument(..., help="Firmware file (.hex or .bin)"),
    strict: bool = typer.Option(False, "--strict", help="Reject HEX records with bad checksums"),
) -> None:
    """Decode a firmware file and show what would be programmed."""
    print_header("Firmware Inspection")

    result = core_inspect_firmware(firmware, strict=strict)
    report_result(result)

    report = result.metadata["report"]
    table = Table(title=str(firmware))
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Format", report["format"].upper())
    table.add_row("Region", result.region)
    table.add_row("Image size", f"{result.bytes_len:,} bytes ({result.metadata['blocks']} blocks)")
    table.add_row("Records", str(report["records"]))
    table.add_row("Data bytes", f"{report['data_bytes']:,}")
    table.add_row("Dropped bytes", str(report["dropped_bytes"]))
    table.add_row("Checksum mismatches", str(len(report["checksum_mismatches"])))
    table.add_row("EOF record", "yes" if report["eof_seen"] else "no")
    table.add_row("SHA256", result.hashes["sha256"])
    console.print(table)


@app.command()
def hex2bin(
    input_hex: Path = typer.Argument(..., help="Intel HEX input"),
    output_bin: Path = typer.Argument(..., help="Raw binary output"),
    strict: bool = typer.Option(False, "--strict", help="Reject HEX records with bad checksums"),
) -> None:
    """Convert Intel HEX firmware to a zero-filled raw image."""
    print_header("HEX to BIN Conversion")

    result = core_convert_hex(input_hex, output_bin, strict=strict)
    report_result(result)
    print_success(f"Wrote {result.bytes_len:,} bytes to {output_bin}")


@spi_app.command("backup")
def spi_backup(
    port: str = typer.Argument(..., help="Serial port"),
    file: Path = typer.Argument(..., help="Output file"),
    baud: str = typer.Argument("115200", help="Baud rate"),
    capacity: str = typer.Option(DEFAULT_SPI_PROFILE, "--capacity", "-c", help="Flash capacity: 4mb or 32mb"),
    strict: bool = typer.Option(False, "--strict", help="Fail on block checksum mismatch"),
) -> None:
    """Dump the whole SPI flash to a file."""
    print_header("SPI Flash Backup")

    try:
        profile = get_spi_profile(parse_capacity(capacity))
        baud_rate = parse_baud(baud)
    except ValueError as e:
        print_error(str(e))
        sys.exit(1)

    console.print(f"Port:     {port} @ {baud_rate}")
    console.print(f"Capacity: {profile.capacity:,} bytes ({profile.block_count} blocks)")

    with make_progress() as progress:
        task = progress.add_task("reading", total=profile.block_count)
        result = core_backup_spi(
            port,
            file,
            profile=profile.name,
            baud=baud_rate,
            strict=strict,
            progress_cb=lambda done, total: progress.update(task, completed=done),
        )

    report_result(result)
    print_success(f"Backup saved to {file} ({result.bytes_len:,} bytes)")


@spi_app.command("restore")
def spi_restore(
    port: str = typer.Argument(..., help="Serial port"),
    file: Path = typer.Argument(..., help="Backup file to write"),
    baud: str = typer.Argument("115200", help="Baud rate"),
    capacity: str = typer.Option(DEFAULT_SPI_PROFILE, "--capacity", "-c", help="Flash capacity: 4mb or 32mb"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate the file only, no serial I/O"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Non-interactive confirmation token (WRITE)"),
) -> None:
    """Write a backup file back to the SPI flash."""
    print_header("SPI Flash Restore")

    try:
        profile = get_spi_profile(parse_capacity(capacity))
        baud_rate = parse_baud(baud)
    except ValueError as e:
        print_error(str(e))
        sys.exit(1)

    if dry_run:
        ctx = create_cli_safety_context(target=profile.name, dry_run=True)
        result = core_restore_spi(port, file, ctx, profile=profile.name, baud=baud_rate)
        report_result(result)
        print_success(f"Dry run OK: {file} matches the {profile.name} capacity")
        return

    # Reject a wrong-sized file before asking for confirmation
    if file.exists() and file.stat().st_size != profile.capacity:
        print_error(
            f"File size mismatch: expected {profile.capacity:,} bytes, got {file.stat().st_size:,}"
        )
        sys.exit(1)

    confirm_write_or_exit(profile.name, f"blocks 0-{profile.block_count - 1}", profile.capacity, confirm)

    with make_progress() as progress:
        task = progress.add_task("writing", total=profile.block_count)
        result = core_restore_spi(
            port,
            file,
            confirmed_context(profile.name),
            profile=profile.name,
            baud=baud_rate,
            progress_cb=lambda done, total: progress.update(task, completed=done),
        )

    report_result(result)
    print_success(f"Restore complete ({result.bytes_len:,} bytes)")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
