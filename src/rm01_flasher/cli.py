"""
RM-01 Flasher CLI

Command-line interface for provisioning the RM-01: robOS on the ESP32-S3,
the host module boot image, the CFE card and the TF card.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler

from rm01_flasher import __version__
from rm01_flasher.config import FlasherConfig
from rm01_flasher.core.parsing import parse_capacity, parse_port
from rm01_flasher.core.safety import ConfirmationGate, CONFIRMATION_TOKEN
from rm01_flasher.core.results import ProvisionReport, StageResult, StageStatus
from rm01_flasher.core.sequencer import Stage, StageSequencer
from rm01_flasher.core.errors import InsufficientCapacity
from rm01_flasher.environment import collect_status, install_hint, missing_tools, running_as_root
from rm01_flasher.firmware import FirmwareStore
from rm01_flasher.hardware.probe import DeviceProbe
from rm01_flasher.hardware.runner import ExternalToolRunner
from rm01_flasher.hardware.serial_channel import SerialTranscript
from rm01_flasher.stages import ProvisioningPlan
from rm01_flasher.storage.planner import (
    emit_partition_operations,
    expected_labels,
    render_sfdisk_script,
    select_scheme,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(level=logging.INFO, rich_tracebacks=True, show_path=False)],
)
logger = logging.getLogger("rm01_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="🔧 RM-01 Flasher - robOS, host module, CFE and TF card provisioning")

STATUS_STYLES = {
    StageStatus.SUCCESS: "green",
    StageStatus.SKIPPED: "cyan",
    StageStatus.FAILED: "red",
}


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


def print_stage_result(result: StageResult) -> None:
    if result.status == StageStatus.SUCCESS:
        print_success(f"{result.stage}: {result.reason}")
    elif result.status == StageStatus.SKIPPED:
        console.print(f"↷ {result.stage}: {result.reason}", style="cyan")
    else:
        print_error(f"{result.stage}: {result.reason}")
        for line in result.diagnostics:
            console.print(f"   {line}", style="dim")
        remediation = result.metadata.get("remediation")
        if remediation:
            console.print(f"   → {remediation}", style="cyan")
    for warning in result.warnings:
        print_warning(warning)


def print_transcript(transcript: SerialTranscript) -> None:
    body = "\n".join(transcript.lines) if not transcript.empty else "[dim](no output captured)[/dim]"
    console.print(Panel(body, title=f"Serial output: {transcript.command}", expand=False))


def print_report(report: ProvisionReport) -> None:
    table = Table(title="Provisioning Summary")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Time", justify="right", style="dim")

    for result in report.results:
        style = STATUS_STYLES[result.status]
        table.add_row(
            result.stage,
            f"[{style}]{result.status.value.upper()}[/{style}]",
            result.reason,
            f"{result.duration:.1f}s",
        )
    console.print(table)

    if report.aborted_after:
        print_warning(f"Run stopped after {report.aborted_after}")
    if report.ok:
        print_success(f"All steps completed ({report.tally()})")
    else:
        print_warning(f"Completed {report.tally()} steps; check the log file for details")


def setup_file_logging(log_dir: Path) -> Path:
    """Add a timestamped log file next to the console output."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"rm01-flasher-{datetime.now():%Y%m%d_%H%M%S}.log"
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    return log_file


def build_config(
    base_dir: Optional[Path] = None,
    port: Optional[str] = None,
    cfe_disk: Optional[str] = None,
    tf_disk: Optional[str] = None,
    l4t_dir: Optional[Path] = None,
    no_sudo: bool = False,
) -> FlasherConfig:
    """Environment first, then command-line overrides."""
    try:
        config = FlasherConfig.from_env(base_dir)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(2)
    return config.with_overrides(
        mcu_port=parse_port(port),
        cfe_disk=cfe_disk,
        tf_disk=tf_disk,
        l4t_dir=l4t_dir,
        use_sudo=False if no_sudo else None,
    )


def build_gate(yes: bool, confirm_token: Optional[str]) -> ConfirmationGate:
    """
    Wire the confirmation gate to typer prompts.

    Supports three modes:
    1. Interactive (TTY): y/n prompts, destructive steps default to no
    2. Unattended: --yes answers ordinary questions, --confirm ERASE
       authorizes destructive steps
    3. Non-interactive without either: every question is answered no
    """
    def show_details(details: dict) -> None:
        consequences = "\n".join(f"  • {c}" for c in details.get("consequences", []))
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  DESTRUCTIVE OPERATION[/bold yellow]\n\n"
            f"Action:  {details.get('action', 'Unknown')}\n"
            f"Target:  {details.get('target', 'Unknown')}\n"
            + (f"\n{consequences}\n" if consequences else ""),
            title="Confirmation Required",
            expand=False,
        ))

    return ConfirmationGate(
        interactive=sys.stdin.isatty(),
        assume_yes=yes,
        confirmation_token=confirm_token,
        prompt_confirmation=lambda question, default: typer.confirm(question, default=default),
        prompt_acknowledge=lambda message: typer.prompt(message, default="", show_default=False),
        show_details=show_details,
    )


def build_plan(config: FlasherConfig, gate: ConfirmationGate) -> ProvisioningPlan:
    return ProvisioningPlan(config, gate, on_transcript=print_transcript)


def run_stages(config: FlasherConfig, gate: ConfirmationGate, stages: List[Stage], title: str) -> None:
    """Run ``stages`` with logging to file, print the summary, exit non-zero on failure."""
    print_header(title)
    log_file = setup_file_logging(config.log_dir)
    logger.info(f"rm01-flasher {__version__}, log file {log_file}")

    if running_as_root():
        print_warning("Running as root; tools are escalated with sudo only where needed")
    missing = missing_tools(ExternalToolRunner.which)
    if missing:
        print_warning(f"Missing tools: {', '.join(missing)}")
        hint = install_hint(missing)
        if hint:
            console.print(f"   → {hint}", style="cyan")

    sequencer = StageSequencer(gate, on_result=print_stage_result)
    report = sequencer.run_all(stages)
    console.print()
    print_report(report)
    console.print(f"[dim]Log file: {log_file}[/dim]")
    if not report.ok:
        raise typer.Exit(1)


# Shared options
PortOption = typer.Option(None, "--port", "-p", help="MCU serial port (default /dev/ttyACM0)")
BaseDirOption = typer.Option(None, "--base-dir", help="Directory for firmware/, sdcard/ and logs/")
CfeOption = typer.Option(None, "--cfe-disk", help="CFE card block device (default /dev/sdd)")
TfOption = typer.Option(None, "--tf-disk", help="TF card block device (default /dev/sda)")
L4tOption = typer.Option(None, "--l4t-dir", help="Linux_for_Tegra directory")
YesOption = typer.Option(False, "--yes", "-y", help="Answer yes to non-destructive questions")
ConfirmOption = typer.Option(
    None, "--confirm", help=f"Type {CONFIRMATION_TOKEN} to authorize destructive steps unattended"
)
NoSudoOption = typer.Option(False, "--no-sudo", help="Run privileged tools without sudo")


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = DeviceProbe.list_serial_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Device", style="magenta")
    table.add_column("Description", style="green")

    for port in ports_list:
        table.add_row(port.device, port.name or "-", port.description or "-")

    console.print(table)


@app.command()
def status(
    port: Optional[str] = PortOption,
    base_dir: Optional[Path] = BaseDirOption,
    cfe_disk: Optional[str] = CfeOption,
    tf_disk: Optional[str] = TfOption,
    l4t_dir: Optional[Path] = L4tOption,
) -> None:
    """Check tools, devices, L4T directory and firmware state."""
    config = build_config(base_dir, port, cfe_disk, tf_disk, l4t_dir)
    print_header("Environment and Device Status")

    runner = ExternalToolRunner(escalation=config.escalation_prefix)
    env = collect_status(config, DeviceProbe(runner), ExternalToolRunner.which)
    console.print(f"System: {env.system}")

    table = Table(title="Status")
    table.add_column("Check", style="cyan")
    table.add_column("OK")
    table.add_column("Detail")
    for label, ok, detail in env.checks():
        table.add_row(label, "[green]✓[/green]" if ok else "[red]✗[/red]", detail)
    console.print(table)

    if env.usb_devices:
        console.print("\n[bold]USB devices:[/bold]")
        for device in env.usb_devices[:10]:
            console.print(f"  {device.line}")

    if env.missing_tools:
        console.print(f"\n→ {install_hint(env.missing_tools)}", style="cyan")


@app.command()
def firmware(
    refresh: bool = typer.Option(False, "--refresh", help="Delete the local copy and download again"),
    base_dir: Optional[Path] = BaseDirOption,
) -> None:
    """Download and unpack the robOS firmware."""
    config = build_config(base_dir)
    gate = build_gate(True, None)
    if refresh:
        FirmwareStore(config).clear()
    run_stages(config, gate, build_plan(config, gate).firmware(), "robOS Firmware")


@app.command("tf-init")
def tf_init(
    refresh: bool = typer.Option(False, "--refresh", help="Fetch the sdcard content again"),
    tf_disk: Optional[str] = TfOption,
    base_dir: Optional[Path] = BaseDirOption,
    yes: bool = YesOption,
    confirm: Optional[str] = ConfirmOption,
    no_sudo: bool = NoSudoOption,
) -> None:
    """Format the TF card as FAT32 (rm01tf) and copy the robOS sdcard content."""
    config = build_config(base_dir, tf_disk=tf_disk, no_sudo=no_sudo)
    gate = build_gate(yes, confirm)
    run_stages(config, gate, build_plan(config, gate).tf(refresh), "TF Card Initialization")


@app.command("mcu-flash")
def mcu_flash(
    port: Optional[str] = PortOption,
    skip_params: bool = typer.Option(False, "--skip-params", help="Flash only, no parameter init"),
    base_dir: Optional[Path] = BaseDirOption,
    yes: bool = YesOption,
    confirm: Optional[str] = ConfirmOption,
    no_sudo: bool = NoSudoOption,
) -> None:
    """Erase and flash robOS onto the ESP32-S3, then initialize its parameters."""
    config = build_config(base_dir, port, no_sudo=no_sudo)
    gate = build_gate(yes, confirm)
    stages = build_plan(config, gate).mcu(with_params=not skip_params)
    run_stages(config, gate, stages, "ESP32-S3 Flash")


@app.command("mcu-init")
def mcu_init(
    port: Optional[str] = PortOption,
    base_dir: Optional[Path] = BaseDirOption,
    yes: bool = YesOption,
    no_sudo: bool = NoSudoOption,
) -> None:
    """Send the robOS parameter set without flashing."""
    config = build_config(base_dir, port, no_sudo=no_sudo)
    gate = build_gate(yes, None)
    run_stages(config, gate, [build_plan(config, gate).mcu_params()], "ESP32-S3 Parameter Init")


@app.command("host-flash")
def host_flash(
    port: Optional[str] = PortOption,
    l4t_dir: Optional[Path] = L4tOption,
    base_dir: Optional[Path] = BaseDirOption,
    yes: bool = YesOption,
    no_sudo: bool = NoSudoOption,
) -> None:
    """Put the host module into recovery mode and flash its boot image."""
    config = build_config(base_dir, port, l4t_dir=l4t_dir, no_sudo=no_sudo)
    gate = build_gate(yes, None)
    run_stages(config, gate, build_plan(config, gate).host(), "Host Module Flash")


@app.command("storage-init")
def storage_init(
    cfe_disk: Optional[str] = CfeOption,
    base_dir: Optional[Path] = BaseDirOption,
    yes: bool = YesOption,
    confirm: Optional[str] = ConfirmOption,
    no_sudo: bool = NoSudoOption,
) -> None:
    """Partition, format and verify the CFE card by capacity."""
    config = build_config(base_dir, cfe_disk=cfe_disk, no_sudo=no_sudo)
    gate = build_gate(yes, confirm)
    run_stages(config, gate, [build_plan(config, gate).storage_init()], "CFE Card Initialization")


@app.command("storage-flash")
def storage_flash(
    cfe_disk: Optional[str] = CfeOption,
    l4t_dir: Optional[Path] = L4tOption,
    base_dir: Optional[Path] = BaseDirOption,
    yes: bool = YesOption,
    confirm: Optional[str] = ConfirmOption,
    no_sudo: bool = NoSudoOption,
) -> None:
    """Write the runtime image onto the CFE card."""
    config = build_config(base_dir, cfe_disk=cfe_disk, l4t_dir=l4t_dir, no_sudo=no_sudo)
    gate = build_gate(yes, confirm)
    run_stages(config, gate, [build_plan(config, gate).storage_flash()], "CFE Card Flash")


@app.command()
def plan(
    capacity: str = typer.Argument(..., help="Card capacity (e.g. 256G, 1T, or bytes)"),
    prefix: str = typer.Option("rm01", "--prefix", help="Label prefix"),
) -> None:
    """Show the partition layout chosen for a card capacity. Touches nothing."""
    print_header("Partition Plan")
    try:
        capacity_bytes = parse_capacity(capacity)
        scheme = select_scheme(capacity_bytes, prefix)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(2)
    except InsufficientCapacity as e:
        print_error(e.reason)
        raise typer.Exit(1)

    operations = emit_partition_operations(scheme)
    table = Table(title=f"Scheme {scheme.tag}")
    table.add_column("#", style="cyan")
    table.add_column("Label", style="magenta")
    table.add_column("Size", style="green")
    for op in operations:
        table.add_row(str(op.number), op.label, "remaining" if op.uses_remaining_space else f"{op.size_gib} GiB")
    console.print(table)
    console.print(f"Expected labels: {', '.join(expected_labels(scheme))}")
    console.print(Panel(render_sfdisk_script(operations, table=scheme.table).rstrip(), title="sfdisk script", expand=False))


@app.command()
def full(
    with_tf: bool = typer.Option(False, "--with-tf", help="Initialize the TF card first"),
    with_storage_init: bool = typer.Option(
        False, "--with-storage-init", help="Partition the CFE card before flashing it"
    ),
    port: Optional[str] = PortOption,
    cfe_disk: Optional[str] = CfeOption,
    tf_disk: Optional[str] = TfOption,
    l4t_dir: Optional[Path] = L4tOption,
    base_dir: Optional[Path] = BaseDirOption,
    yes: bool = YesOption,
    confirm: Optional[str] = ConfirmOption,
    no_sudo: bool = NoSudoOption,
) -> None:
    """Run the complete sequence: firmware, ESP32-S3, host module, CFE card."""
    config = build_config(base_dir, port, cfe_disk, tf_disk, l4t_dir, no_sudo)
    gate = build_gate(yes, confirm)
    stages = build_plan(config, gate).full(with_tf=with_tf, with_storage_init=with_storage_init)
    run_stages(config, gate, stages, "RM-01 Full Provisioning")


@app.command()
def logs(
    lines: int = typer.Option(20, "--lines", "-n", help="Lines to show from the newest log"),
    base_dir: Optional[Path] = BaseDirOption,
) -> None:
    """Show recent log files and the tail of the newest one."""
    config = build_config(base_dir)
    print_header("Log Files")

    log_files = sorted(config.log_dir.glob("rm01-flasher-*.log"))
    if not log_files:
        print_warning(f"No log files in {config.log_dir}")
        return

    for log_file in log_files[-5:]:
        console.print(f"  {log_file.name}  ({log_file.stat().st_size:,} bytes)")

    newest = log_files[-1]
    tail = newest.read_text(encoding="utf-8", errors="replace").splitlines()[-lines:]
    console.print(Panel("\n".join(tail) or "(empty)", title=newest.name, expand=False))


@app.command()
def version() -> None:
    """Show the version."""
    console.print(f"rm01-flasher {__version__}")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        # Nothing is rolled back: a partitioned or half-written card stays that way
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
