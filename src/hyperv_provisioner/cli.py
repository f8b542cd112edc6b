#!/usr/bin/env python3
"""
Hyper-V provisioning CLI.

    hvprov provision vms.json web01 web02
    hvprov decommission vms.json web01 --remove-network-objects --force
    hvprov show vms.json

VM names may also be piped in, one per line:

    Get-Content names.txt | hvprov provision vms.json
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from hyperv_provisioner.broker import ExecutionContext
from hyperv_provisioner.config import Config, ReconcileOptions
from hyperv_provisioner.engine import ReconciliationEngine, VMResult
from hyperv_provisioner.exceptions import ProvisionerError, StoreError
from hyperv_provisioner.models import DesiredStateStore
from hyperv_provisioner.policy import AllowAll, ConfirmationPolicy, DenyAll, InteractiveConfirmation

app = typer.Typer(
    name="hvprov",
    help="Provision and decommission Hyper-V VMs from a declarative store",
    add_completion=False,
)
console = Console()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _set_verbose(verbose: bool) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _read_names(names: Optional[List[str]]) -> List[str]:
    """Positional names, or names piped on stdin when none were given."""
    if names:
        return list(names)
    if sys.stdin is not None and not sys.stdin.isatty():
        return [line.strip() for line in sys.stdin if line.strip()]
    return []


def _load_store(store: Path) -> DesiredStateStore:
    try:
        return DesiredStateStore.load(store, default_path=Config.DEFAULT_VM_PATH)
    except StoreError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)


def _confirmation(interactive: bool, allow: bool) -> ConfirmationPolicy:
    if allow:
        return AllowAll()
    if interactive:
        return InteractiveConfirmation()
    return DenyAll()


def _report(title: str, results: List[VMResult]) -> None:
    table = Table(title=title)
    table.add_column("VM", style="cyan")
    table.add_column("Host")
    table.add_column("Result")
    table.add_column("Step")
    table.add_column("Message", overflow="fold")
    for result in results:
        table.add_row(
            result.name,
            result.host or "",
            "✅ ok" if result.success else "❌ failed",
            "" if result.success else result.step,
            result.message,
        )
    console.print(table)

    failed = [r for r in results if not r.success]
    console.print(f"  Total: {len(results)}  ✅ Success: {len(results) - len(failed)}  ❌ Failed: {len(failed)}")
    if failed:
        raise typer.Exit(1)


def _run(action: str, store: Path, names: List[str], options: ReconcileOptions, confirm: ConfirmationPolicy) -> None:
    desired_store = _load_store(store)
    if not names:
        console.print("❌ No VM names given")
        raise typer.Exit(1)

    try:
        with ExecutionContext() as context:
            engine = ReconciliationEngine.build(context, desired_store, options=options, confirm=confirm)
            results = engine.provision(names) if action == "provision" else engine.decommission(names)
    except ProvisionerError as e:
        console.print(f"❌ {action} aborted: {e}")
        raise typer.Exit(1)
    _report(f"{action.capitalize()} results", results)


@app.command("provision")
def provision(
    store: Path = typer.Argument(..., help="Declarative store (JSON keyed by VM name)"),
    names: Optional[List[str]] = typer.Argument(None, help="VM names; read from stdin when omitted"),
    skip_provisioning: bool = typer.Option(False, "--skip-provisioning", help="Do not run OS provisioning"),
    skip_start: bool = typer.Option(False, "--skip-start", help="Leave stopped VMs off"),
    force_restart: bool = typer.Option(False, "--force-restart", help="Restart VMs that are already running"),
    preserve_hard_drives: bool = typer.Option(
        False, "--preserve-hard-drives", help="Reattach disks displaced from a desired slot elsewhere"
    ),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Ask before surprising actions"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm every action that needs consent"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging, including every host command"),
):
    """Create or converge VMs to their desired state."""
    _set_verbose(verbose)
    options = ReconcileOptions(
        skip_provisioning=skip_provisioning,
        skip_start=skip_start,
        force_restart=force_restart,
        preserve_hard_drives=preserve_hard_drives,
    )
    console.print(f"🚀 Provisioning from {store}")
    _run("provision", store, _read_names(names), options, _confirmation(interactive, yes))


@app.command("decommission")
def decommission(
    store: Path = typer.Argument(..., help="Declarative store (JSON keyed by VM name)"),
    names: Optional[List[str]] = typer.Argument(None, help="VM names; read from stdin when omitted"),
    remove_network_objects: bool = typer.Option(
        False, "--remove-network-objects", help="Also remove DHCP reservations, AD computer objects and DNS records"
    ),
    preserve_hard_drives: bool = typer.Option(False, "--preserve-hard-drives", help="Keep disk files"),
    dns_zone: Optional[str] = typer.Option(None, "--dns-zone", help="Zone holding the VM's records"),
    force: bool = typer.Option(False, "--force", "-f", help="Turn off running VMs without asking"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Ask before turning off running VMs"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging, including every host command"),
):
    """Remove VMs and everything registered for them."""
    _set_verbose(verbose)
    options = ReconcileOptions(
        preserve_hard_drives=preserve_hard_drives,
        remove_network_objects=remove_network_objects,
        force=force,
        dns_zone=dns_zone,
    )
    console.print(f"🗑️  Decommissioning from {store}")
    _run("decommission", store, _read_names(names), options, _confirmation(interactive, force))


@app.command("show")
def show(
    store: Path = typer.Argument(..., help="Declarative store (JSON keyed by VM name)"),
    names: Optional[List[str]] = typer.Argument(None, help="VM names; all entries when omitted"),
):
    """Validate the store and show the desired records without touching any host."""
    desired_store = _load_store(store)
    table = Table(title=f"Desired state: {store}")
    table.add_column("VM", style="cyan")
    table.add_column("Host")
    table.add_column("Gen")
    table.add_column("CPU")
    table.add_column("Memory")
    table.add_column("Disks")
    table.add_column("Adapters")
    table.add_column("Deployment")

    errors = 0
    for name in names or desired_store.names():
        try:
            vm = desired_store.get(name)
        except ProvisionerError as e:
            console.print(f"❌ {e}")
            errors += 1
            continue
        memory = f"{vm.memory.startup_bytes // 1024**2} MB"
        if vm.memory.dynamic:
            low, high = vm.memory.effective_bounds()
            memory += f" ({low // 1024**2}-{high // 1024**2} MB)"
        table.add_row(
            vm.name,
            vm.host or "-",
            str(vm.generation),
            str(vm.processor_count),
            memory,
            "\n".join(f"{d.path} ({d.size_bytes // 1024**3} GB)" for d in vm.disks),
            "\n".join(f"{a.name} → {a.switch or '-'} ({a.vlan_mode.value})" for a in vm.adapters),
            vm.deployment.method.value if vm.deployment else "-",
        )
    console.print(table)
    if errors:
        raise typer.Exit(1)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
