"""Rsync Guard — Main Entry Point

Installed as the forced command of an SSH key, e.g. in authorized_keys:

    command="/usr/local/bin/rsync_guard.py -ro /srv/sync",no-pty,no-port-forwarding ssh-ed25519 AAAA...

Everything on this command line is trusted; the client's request only
arrives through SSH_ORIGINAL_COMMAND and is vetted by core.dispatcher.
"""

from __future__ import annotations
import argparse
import logging
import os
import stat
import sys

# Ensure our own directory is on sys.path (sshd runs us from the user's home)
_GUARD_DIR = os.path.dirname(os.path.abspath(__file__))
if _GUARD_DIR not in sys.path:
    sys.path.insert(0, _GUARD_DIR)

from core.audit_log import AuditLogger, DEFAULT_AUDIT_LOG
from core.dispatcher import GuardDispatcher
from core.errors import GuardError
from core.executor import DEFAULT_RSYNC, Executor
from core.lock_manager import DEFAULT_LOCK_FILE, LockManager
from models.models import RestrictedRoot, SessionFlags

PROG = "rsync-guard"
REJECT_EXIT_STATUS = 1


def configure_logging(level: str = "WARNING", log_file: str | None = None) -> None:
    """Diagnostics go to a file or nowhere; stderr belongs to the SSH client."""
    handlers: list = []
    if log_file:
        # TOCTOU-safe log file open: O_NOFOLLOW against symlink attacks,
        # then fstat to reject non-regular files.
        try:
            open_flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
            if hasattr(os, "O_NOFOLLOW"):
                open_flags |= os.O_NOFOLLOW
            log_fd = os.open(log_file, open_flags, 0o600)
            if not stat.S_ISREG(os.fstat(log_fd).st_mode):
                os.close(log_fd)
            else:
                handlers.append(logging.StreamHandler(os.fdopen(log_fd, "a")))
        except OSError:
            pass
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s[%(process)d]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Restrict an SSH key to rsync transfers inside one directory.",
    )
    direction = parser.add_mutually_exclusive_group()
    direction.add_argument(
        "-ro", "--read-only", dest="read_only", action="store_true",
        help="Allow only reading from DIR. Implies -no-del and -no-lock.",
    )
    direction.add_argument(
        "-wo", "--write-only", dest="write_only", action="store_true",
        help="Allow only writing to DIR.",
    )
    parser.add_argument(
        "-munge", "--munge-links", dest="munge_links", action="store_true",
        help="Force rsync's --munge-links on the server side.",
    )
    parser.add_argument(
        "-no-del", "--no-delete", dest="no_delete", action="store_true",
        help="Disable rsync's --delete* and --remove* options.",
    )
    parser.add_argument(
        "-no-lock", "--no-lock", dest="no_lock", action="store_true",
        help="Do not take the shared/exclusive transfer lock.",
    )
    parser.add_argument(
        "-no-overwrite", "--no-overwrite", dest="no_overwrite", action="store_true",
        help="Force rsync's --ignore-existing so existing files are never replaced.",
    )
    parser.add_argument(
        "-sudo", "--privilege-helper", dest="privilege_helper", action="store_true",
        help="Run rsync through sudo (or doas when sudo is not installed).",
    )
    parser.add_argument("--helper", default=None, help="Explicit privilege helper path")
    parser.add_argument(
        "--rsync", default=os.environ.get("RSYNC_GUARD_RSYNC", DEFAULT_RSYNC),
        help=f"rsync binary (default: $RSYNC_GUARD_RSYNC or {DEFAULT_RSYNC})",
    )
    parser.add_argument(
        "--audit-log", default=os.environ.get("RSYNC_GUARD_AUDIT_LOG", DEFAULT_AUDIT_LOG),
        help="Audit log; only written if it already exists "
             "(default: $RSYNC_GUARD_AUDIT_LOG or ~/rsync-guard.log)",
    )
    parser.add_argument(
        "--lock-file", default=os.environ.get("RSYNC_GUARD_LOCK_FILE", DEFAULT_LOCK_FILE),
        help="Lock file (default: $RSYNC_GUARD_LOCK_FILE or ~/.rsync-guard.lock)",
    )
    parser.add_argument("--debug-log", default=None, help="Diagnostic log file")
    parser.add_argument(
        "--log-level", type=str, default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Diagnostic logging level (default: WARNING)",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Vet and audit the request, print the rsync command, do not run it.",
    )
    parser.add_argument("dir", metavar="DIR", help="The restricted directory.")
    return parser


def main(argv: list | None = None, environ: dict | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    environ = os.environ if environ is None else environ

    if not os.path.isabs(args.rsync):
        parser.error("--rsync must be an absolute path")
    if args.helper and not os.path.isabs(args.helper):
        parser.error("--helper must be an absolute path")
    try:
        root = RestrictedRoot.from_path(args.dir)
    except ValueError as e:
        parser.error(str(e))

    configure_logging(args.log_level, args.debug_log)
    logger = logging.getLogger("rsync_guard.main")

    flags = SessionFlags.resolve(
        read_only=args.read_only,
        write_only=args.write_only,
        munge_links=args.munge_links,
        no_delete=args.no_delete,
        no_lock=args.no_lock,
        privilege_helper=args.privilege_helper,
        no_overwrite=args.no_overwrite,
    )
    executor = Executor(root, flags, rsync_path=args.rsync, helper_path=args.helper)
    dispatcher = GuardDispatcher(
        flags,
        root,
        AuditLogger(args.audit_log),
        None if flags.disable_locking else LockManager(args.lock_file),
        executor,
        dry_run=args.dry_run,
    )
    logger.debug("Session: root=%s flags=%s", root, ",".join(flags.active()) or "-")

    try:
        invocation = dispatcher.handle(environ)
        if args.dry_run:
            print(" ".join(executor.argv_for(invocation)), file=sys.stderr)
    except GuardError as e:
        print(f"{PROG}: {e.public_message}", file=sys.stderr)
        return REJECT_EXIT_STATUS

    # Without a privilege helper only dry-run gets here.
    return dispatcher.exit_status or 0


if __name__ == "__main__":
    sys.exit(main())
