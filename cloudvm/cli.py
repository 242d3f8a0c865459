"""CLI entry points for cloudvm."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from cloudvm.config import Settings, load_settings
from cloudvm.constants import _SENSITIVE_FIELDS, PURGE_PHRASE
from cloudvm.environment import HostEnvironment
from cloudvm.exceptions import ManagerError
from cloudvm.lifecycle import LifecycleController
from cloudvm.models import RunningHandle, VMRecord, VMStatus
from cloudvm.utils import format_size, log


def show_config(settings: Settings) -> None:
    """Print the resolved configuration."""
    for field in dataclasses.fields(settings):
        value = getattr(settings, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        elif isinstance(value, dict):
            print(f"  {field.name}:")
            for key in sorted(value):
                print(f"    {key}: {value[key]}")
        elif isinstance(value, list):
            print(f"  {field.name}: {' '.join(str(item) for item in value)}")
        else:
            print(f"  {field.name}: {value}")
    print(f"  images_dir: {settings.images_dir}")
    print(f"  vms_dir: {settings.vms_dir}")


def print_connection_banner(record: VMRecord, handle: RunningHandle) -> None:
    """Print a visually distinct access-info banner after a VM starts."""
    lines: List[str] = []
    lines.append(f"  VM: {record.name} ({record.image})")
    lines.append(f"  Memory: {record.memory_mb} MiB | CPUs: {record.cpus} | Disk: {record.disk_size}")
    if handle.address:
        lines.append(f"  SSH:  ssh {record.username}@{handle.address}")
    lines.append(f"  mDNS: {record.name}.local")
    lines.append(f"  User: {record.username}  Pass: {record.password}")
    lines.append(f"  Log:  {handle.log_path}")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def print_vm_table(statuses: List[VMStatus]) -> None:
    if not statuses:
        log("INFO", "No VMs found")
        return
    header = f"{'NAME':<24} {'STATUS':<9} {'IP':<16} {'IMAGE':<10} {'MEM':>6} {'CPU':>4} {'DISK':>14}"
    print(header)
    print("-" * len(header))
    for status in statuses:
        record = status.record
        disk = f"{format_size(status.disk.actual_bytes)}/{format_size(status.disk.virtual_bytes)}"
        print(
            f"{record.name:<24} {status.state.value:<9} {status.address or '-':<16} {record.image:<10} "
            f"{record.memory_mb:>6} {record.cpus:>4} {disk:>14}"
        )


def print_vm_status(status: VMStatus, show_password: bool = False) -> None:
    record = status.record
    for key, value in record.to_dict().items():
        if key in _SENSITIVE_FIELDS and not show_password:
            value = "********"
        print(f"  {key}: {value}")
    print(f"  state: {status.state.value}")
    print(f"  pid: {status.pid or '-'}")
    print(f"  address: {status.address or '-'}")
    print(f"  log: {status.log_path}")
    print(f"  disk: {format_size(status.disk.actual_bytes)} used / {format_size(status.disk.virtual_bytes)} virtual")
    if status.orphan_pids:
        print(f"  orphan pids: {', '.join(str(pid) for pid in status.orphan_pids)}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cloudvm", description="Lightweight cloud-image VMs on QEMU")
    sub = parser.add_subparsers(dest="command", required=True)

    vm = sub.add_parser("vm", help="Manage virtual machines")
    vm_sub = vm.add_subparsers(dest="action", required=True)
    create = vm_sub.add_parser("create", help="Create and boot a new VM")
    create.add_argument("--name", help="VM name (generated when omitted)")
    create.add_argument("--image", help="Base image identifier")
    create.add_argument("--user", help="Guest username")
    create.add_argument("--pass", dest="password", help="Guest password (generated when omitted)")
    vm_sub.add_parser("list", help="List VMs")
    for action, help_text in (
        ("start", "Start a stopped VM"),
        ("stop", "Stop a running VM"),
        ("ip", "Print the guest IP address"),
        ("console", "Attach to the serial console"),
    ):
        vm_sub.add_parser(action, help=help_text).add_argument("name")
    status = vm_sub.add_parser("status", help="Show VM details")
    status.add_argument("name")
    status.add_argument("--show-password", action="store_true", help="Print the guest password")
    delete = vm_sub.add_parser("delete", help="Stop and delete a VM")
    delete.add_argument("name")
    delete.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    image = sub.add_parser("image", help="Manage base images")
    image_sub = image.add_subparsers(dest="action", required=True)
    image_sub.add_parser("pull", help="Download a base image").add_argument("identifier")
    image_sub.add_parser("list", help="List downloaded base images")
    image_sub.add_parser("delete", help="Delete a downloaded base image").add_argument("identifier")

    purge = sub.add_parser("purge", help="Delete every VM and base image")
    purge.add_argument("--confirm", metavar="PHRASE", help=f"Pass '{PURGE_PHRASE}' to skip the prompt")

    sub.add_parser("config", help="Show resolved configuration and exit")
    return parser


def _run_vm(controller: LifecycleController, args: argparse.Namespace) -> int:
    if args.action == "create":
        record, handle = controller.create(args.name, args.image, args.user, args.password)
        print_connection_banner(record, handle)
    elif args.action == "list":
        print_vm_table(controller.list_vms())
    elif args.action == "start":
        handle = controller.start(args.name)
        if handle.already_running:
            log("INFO", f"VM '{args.name}' is already running (PID {handle.pid})")
        else:
            print_connection_banner(controller.registry.load(args.name), handle)
    elif args.action == "stop":
        controller.stop(args.name)
    elif args.action == "delete":
        controller.delete(args.name, confirm=True if args.yes else None)
    elif args.action == "status":
        print_vm_status(controller.status(args.name), show_password=args.show_password)
    elif args.action == "ip":
        print(controller.ip(args.name))
    elif args.action == "console":
        return controller.console(args.name)
    return 0


def _run_image(controller: LifecycleController, args: argparse.Namespace) -> int:
    if args.action == "pull":
        path = controller.images.pull(args.identifier)
        log("SUCCESS", f"Image '{args.identifier}' available at {path}")
    elif args.action == "list":
        images = controller.images.list_images()
        if not images:
            log("INFO", "No base images downloaded")
        for image in images:
            print(f"  {image.identifier:<12} {format_size(image.size_bytes):>8}  {image.path}")
    elif args.action == "delete":
        controller.images.delete(args.identifier)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.command == "config":
        show_config(settings)
        return 0

    controller = LifecycleController(settings, HostEnvironment())
    try:
        if args.command == "vm":
            return _run_vm(controller, args)
        if args.command == "image":
            return _run_image(controller, args)
        if args.command == "purge":
            controller.purge(args.confirm)
        return 0
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted. A VM that was booting keeps running; use 'cloudvm vm stop NAME' to stop it.")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
