"""Command-line interface for volmount.

Usage:
    volmount mount         # Attach and mount a volume (single pass)
    volmount run           # Retry until a volume is mounted
    volmount status        # Show volumes and mount targets
    volmount validate      # Validate configuration
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from threading import Event

from .config import Config, ConfigError, load_from_env, load_from_file
from .controller import ControllerConfig, VolumeMountController, WaitCancelledError
from .filesystem import Filesystem, FilesystemError, RealFilesystem
from .mount import MountBackend, MountError, NsenterMounter, SystemMounter
from .paths import IdentityPathTranslator, PathTranslator, RootfsPathTranslator
from .volume import AttachContractError, ProviderError, StaticVolumeProvider, Volume

logger = logging.getLogger(__name__)


def _get_version() -> str:
    """Get package version, with fallback for development."""
    try:
        return version("volmount")
    except PackageNotFoundError:
        return "dev"


def configure_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure logging."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_config(args: argparse.Namespace) -> Config:
    """Load configuration from file or environment."""
    if args.config:
        return load_from_file(Path(args.config))
    else:
        return load_from_env()


def create_components(config: Config) -> tuple[
    Filesystem, PathTranslator, StaticVolumeProvider, MountBackend, MountBackend
]:
    """Create all components from configuration.

    The execution mode is decided here, once: containerized mode reaches the
    host through nsenter and the rootfs bind mount, host mode uses both
    directly.

    Returns:
        (fs, paths, provider, host mounter, local mounter)
    """
    fs = RealFilesystem()

    paths: PathTranslator
    mounter: MountBackend
    if config.containerized:
        paths = RootfsPathTranslator(config.rootfs_path)
        mounter = NsenterMounter(rootfs=config.rootfs_path, default_fstype=config.default_fstype)
    else:
        paths = IdentityPathTranslator()
        mounter = SystemMounter(default_fstype=config.default_fstype)

    local_mounter = SystemMounter(default_fstype=config.default_fstype)

    provider = StaticVolumeProvider(
        specs=config.volumes,
        fs=fs,
        paths=paths,
        host_id=config.host_id,
    )

    return fs, paths, provider, mounter, local_mounter


def create_controller(config: Config, stop_event: Event | None = None) -> VolumeMountController:
    """Create a VolumeMountController from configuration."""
    fs, paths, provider, mounter, local_mounter = create_components(config)

    return VolumeMountController(
        provider=provider,
        mounter=mounter,
        paths=paths,
        fs=fs,
        config=ControllerConfig(
            poll_interval=config.poll_interval,
            fstype=config.fstype,
            mount_root=config.mount_root,
            disks_dir=config.disks_dir,
            stop_event=stop_event,
        ),
        local_mounter=local_mounter,
    )


def _print_volumes(volumes: list[Volume], as_json: bool = False) -> None:
    if as_json:
        print(json.dumps([v.to_dict() for v in volumes], indent=2))
        return

    for v in volumes:
        print(f"{v.provider_id}: {v.local_device} mounted at {v.mountpoint}")


def _log_config_warnings(config: Config) -> None:
    for warning in config.validate():
        logger.warning(f"Config warning: {warning}")


def cmd_mount(args: argparse.Namespace) -> int:
    """Attach and mount a volume in a single pass."""
    config = load_config(args)
    _log_config_warnings(config)
    controller = create_controller(config)

    volumes = controller.mount_volumes()
    if not volumes:
        print("No volume mounted")
        return 1

    _print_volumes(volumes, as_json=args.json)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Retry attaching and mounting until a volume is mounted.

    Provider and filesystem errors (e.g. a transient EACCES on the disks
    directory) are retried; a broken attach contract is not.
    """
    config = load_config(args)
    _log_config_warnings(config)

    stop_event = Event()
    controller = create_controller(config, stop_event=stop_event)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        stop_event.set()

    old_sigterm = signal.signal(signal.SIGTERM, handle_signal)
    old_sigint = signal.signal(signal.SIGINT, handle_signal)

    try:
        while not stop_event.is_set():
            try:
                volumes = controller.mount_volumes()
            except (ProviderError, FilesystemError) as e:
                logger.warning(f"{e}, will retry")
                volumes = []
            except WaitCancelledError as e:
                logger.info(str(e))
                break

            if volumes:
                _print_volumes(volumes, as_json=args.json)
                return 0

            logger.info(f"No volume mounted yet, retrying in {config.retry_interval}s")
            if stop_event.wait(timeout=config.retry_interval):
                break
    finally:
        signal.signal(signal.SIGTERM, old_sigterm)
        signal.signal(signal.SIGINT, old_sigint)

    logger.info("Stopped before a volume was mounted")
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    """Show volumes known to the provider and what is mounted at their targets."""
    config = load_config(args)
    controller = create_controller(config)

    volumes = controller.provider.find_volumes()
    try:
        mounts = controller.mounter.list_mounts()
    except MountError as e:
        logger.warning(f"Cannot list mounts: {e}")
        mounts = []

    entries = []
    for v in volumes:
        target = str(controller.mountpoint_for(v))
        devices = [m.device for m in mounts if m.path == target]
        entries.append({
            "provider_id": v.provider_id,
            "mount_name": v.mount_name,
            "attached_to": v.attached_to or None,
            "local_device": v.local_device or None,
            "target": target,
            "mounted_devices": devices,
        })

    status = {
        "containerized": config.containerized,
        "host_id": config.host_id,
        "volumes": entries,
    }

    if args.json:
        print(json.dumps(status, indent=2))
    else:
        print(f"Host: {status['host_id']}")
        print(f"  Containerized: {'Yes' if status['containerized'] else 'No'}")
        print()
        if not entries:
            print("No volumes configured")
        for entry in entries:
            print(f"{entry['provider_id']} ({entry['mount_name']}):")
            print(f"  Attached to: {entry['attached_to'] or '-'}")
            print(f"  Device: {entry['local_device'] or '-'}")
            print(f"  Target: {entry['target']}")
            mounted = ", ".join(entry["mounted_devices"]) or "not mounted"
            print(f"  Mounted: {mounted}")

    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate configuration."""
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 1

    warnings = config.validate()

    if warnings:
        print("Configuration warnings:")
        for warning in warnings:
            print(f"  - {warning}")
        return 1
    else:
        print("Configuration is valid")
        return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="volmount - attach and mount a block-storage volume on this host",
        prog="volmount",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {_get_version()}"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output"
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug output"
    )
    parser.add_argument(
        "-c", "--config", type=str, help="Path to config file"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    mount_parser = subparsers.add_parser("mount", help="Attach and mount a volume (single pass)")
    mount_parser.add_argument("--json", action="store_true", help="Output as JSON")

    run_parser = subparsers.add_parser("run", help="Retry until a volume is mounted")
    run_parser.add_argument("--json", action="store_true", help="Output as JSON")

    status_parser = subparsers.add_parser("status", help="Show volumes and mount targets")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    subparsers.add_parser("validate", help="Validate configuration")

    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose, debug=args.debug)

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "mount": cmd_mount,
        "run": cmd_run,
        "status": cmd_status,
        "validate": cmd_validate,
    }

    try:
        return commands[args.command](args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except AttachContractError as e:
        logger.critical(f"Fatal: {e}")
        return 2
    except (ProviderError, FilesystemError, WaitCancelledError) as e:
        logger.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except Exception as e:
        logger.exception(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
