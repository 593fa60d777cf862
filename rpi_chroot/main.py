import argparse
import functools
import sys
from pathlib import Path

from rpi_chroot.__version__ import __version__
from rpi_chroot.config import settings
from rpi_chroot.logging import LoggerFactory, setup_logging
from rpi_chroot.services import download
from rpi_chroot.services.lifecycle import ChrootManager
from rpi_chroot.storage.exceptions import ChrootError, CommandError


log = LoggerFactory.for_system()


def _add_logging_flags(parser):
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw command output")


def _add_manage_commands(subparsers):
    addsize = subparsers.add_parser("addsize", help="Grow the image by MEGABYTES MiB")
    addsize.add_argument("megabytes", type=int)
    subparsers.add_parser("mount", help="Mount the chroot")
    subparsers.add_parser("umount", help="Unmount the chroot and release its loop device")
    subparsers.add_parser("status", help="Show which mount points are active")
    enter = subparsers.add_parser("enter", help="Run a command or shell in the chroot")
    enter.add_argument("-u", "--user", default=None, help="Guest user (default: pi)")
    enter.add_argument(
        "command_args", nargs=argparse.REMAINDER, metavar="command", help="Command to run"
    )


def build_parser():
    parser = argparse.ArgumentParser(
        prog="rpi-chroot", description="Emulated Raspberry Pi chroot manager"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    _add_logging_flags(parser)
    parser.add_argument("--dir", default=None, help="Installation directory (default: cwd)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    install = subparsers.add_parser("install", help="Provision a new chroot")
    install.add_argument("--arch", default=None, help="Guest architecture (default: armhf)")
    install.add_argument("--image-url", default=None, help="Image archive URL or local path")
    install.add_argument("--env", default=None, help="Space-separated variables to forward (LC_* allowed)")
    install.add_argument("--packages", default=None, help="Space-separated guest packages")
    install.add_argument("--add-size", type=int, default=None, help="MiB to add to the image")
    install.add_argument("--tmpdir", default=None, help="Scratch directory for downloads")
    install.add_argument("--user", default=None, help="Default guest user")
    _add_manage_commands(subparsers)
    return parser


def build_manage_parser(root):
    parser = argparse.ArgumentParser(
        prog=str(Path(root) / "chroot"),
        description=f"Manage the chroot in {root}",
    )
    _add_logging_flags(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_manage_commands(subparsers)
    return parser


def _configure_logging(args):
    try:
        setup_logging(debug=args.debug, trace=args.trace)
    except OSError:
        setup_logging(debug=args.debug, trace=args.trace, file_logging=False)


def _build_manager(installation, environ=None):
    policy = settings.get_detach_policy(environ)
    fetcher = functools.partial(
        download.fetch,
        timeout=settings.get_float("DOWNLOAD_TIMEOUT", environ),
        backend=str(settings.get_setting("DOWNLOAD_BACKEND", environ)),
    )
    return ChrootManager(installation, policy=policy, fetcher=fetcher)


def _run(manager, args):
    if args.command == "install":
        utility_path = manager.install()
        print(f"Chroot ready. Manage it with {utility_path}")
        return 0
    if args.command == "addsize":
        manager.addsize(args.megabytes)
        return 0
    if args.command == "mount":
        manager.mount()
        return 0
    if args.command == "umount":
        return manager.umount()
    if args.command == "status":
        for target, mounted in manager.status().items():
            print(f"{'mounted' if mounted else 'unmounted':<10} {target}")
        return 0
    if args.command == "enter":
        command = list(args.command_args) if args.command_args else None
        return manager.enter(args.user, command)
    raise ValueError(f"Unknown command: {args.command}")


def _dispatch(manager, args):
    try:
        return _run(manager, args)
    except CommandError as error:
        log.error(str(error))
        return error.returncode or 1
    except ChrootError as error:
        log.error(str(error))
        # Mount and loop failures exit with the status of the failed command.
        cause = error.__cause__
        if isinstance(cause, CommandError) and cause.returncode:
            return cause.returncode
        return 1
    except ValueError as error:
        log.error(str(error))
        return 2


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)
    try:
        installation = settings.load_installation(
            dir=args.dir,
            arch=getattr(args, "arch", None),
            image_url=getattr(args, "image_url", None),
            env=getattr(args, "env", None),
            packages=getattr(args, "packages", None),
            add_size_mb=getattr(args, "add_size", None),
            tmpdir=getattr(args, "tmpdir", None),
            user=getattr(args, "user", None) if args.command == "install" else None,
        )
        manager = _build_manager(installation)
    except ValueError as error:
        parser.error(str(error))
    return _dispatch(manager, args)


def manage_main(root, argv=None, config=None):
    """Entry point of the generated management utility.

    ``config`` holds the settings recorded at install time (environment
    allow-list, default user, image pattern); environment variables fill in
    the rest.
    """
    parser = build_manage_parser(root)
    args = parser.parse_args(argv)
    _configure_logging(args)
    try:
        installation = settings.load_installation(**dict(config or {}, dir=str(root)))
        manager = _build_manager(installation)
    except ValueError as error:
        parser.error(str(error))
    return _dispatch(manager, args)


if __name__ == "__main__":
    sys.exit(main())
