"""Rsync Guard — Executor

Replaces this process with rsync (or, under a privilege helper, runs it
as a child), executing the vetted argument vector from inside the
restricted root. An explicit "--" always separates options from paths so
a path beginning with "-" stays a path.
"""

from __future__ import annotations
import logging
import os
import shutil
import subprocess
from typing import Callable, List, Optional, Sequence

from core.errors import ExecFailure
from models.models import RestrictedRoot, SanitizedInvocation, SessionFlags

logger = logging.getLogger("rsync_guard.executor")

DEFAULT_RSYNC = "/usr/bin/rsync"
SUDO = "/usr/bin/sudo"
DOAS = "/usr/bin/doas"

# rsync's own convention when no path is given.
DEFAULT_PATHS = (".",)


def find_privilege_helper(explicit: Optional[str] = None) -> str:
    """sudo when it is installed, doas otherwise, unless a helper is configured."""
    if explicit:
        return explicit
    for candidate in (SUDO, DOAS):
        if os.path.exists(candidate):
            return candidate
    found = shutil.which("sudo") or shutil.which("doas")
    if found:
        return found
    raise ExecFailure("no privilege helper (sudo or doas) found")


def build_argv(
    invocation: SanitizedInvocation,
    flags: SessionFlags,
    rsync_path: str = DEFAULT_RSYNC,
    helper_path: Optional[str] = None,
) -> List[str]:
    argv: List[str] = []
    if flags.use_privilege_helper:
        # -n: fail instead of prompting; there is no terminal to prompt on.
        argv += [find_privilege_helper(helper_path), "-n"]
    argv.append(rsync_path)
    argv += invocation.argv_options()
    if flags.force_munge_links:
        argv.append("--munge-links")
    if flags.no_overwrite:
        argv.append("--ignore-existing")
    argv += ["--", "."]
    argv += list(invocation.paths or DEFAULT_PATHS)
    return argv


class Executor:
    """Runs the vetted command.

    prepare() does everything that can fail before the attempt is audited;
    run() then hands over to rsync. Without a privilege helper the process
    image is replaced and the inherited lock descriptor goes with it. sudo
    closes inherited descriptors above stderr, so with a helper rsync runs
    as a child while this process keeps the lock, and its exit status is
    returned.
    """

    def __init__(
        self,
        root: RestrictedRoot,
        flags: SessionFlags,
        rsync_path: str = DEFAULT_RSYNC,
        helper_path: Optional[str] = None,
        execv: Optional[Callable[[str, Sequence[str]], None]] = None,
        spawn: Optional[Callable[[Sequence[str]], int]] = None,
    ):
        self.root = root
        self.flags = flags
        self.rsync_path = rsync_path
        self.helper_path = helper_path
        self._execv = execv or os.execv
        self._spawn = spawn or subprocess.call

    def argv_for(self, invocation: SanitizedInvocation) -> List[str]:
        return build_argv(invocation, self.flags, self.rsync_path, self.helper_path)

    def prepare(self, invocation: SanitizedInvocation) -> List[str]:
        argv = self.argv_for(invocation)
        if not os.access(argv[0], os.X_OK):
            raise ExecFailure(f"{argv[0]!r} is not executable")
        try:
            os.chdir(self.root.path)
        except OSError as e:
            raise ExecFailure(f"cannot enter {self.root.path!r}: {e}")
        return argv

    def run(self, argv: List[str]) -> Optional[int]:
        """Does not return on success unless a privilege helper is used."""
        logger.info("Executing: %r", argv)
        try:
            if self.flags.use_privilege_helper:
                status = self._spawn(argv)
                logger.info("%s exited with status %d", argv[0], status)
                return status
            self._execv(argv[0], argv)
        except OSError as e:
            logger.error("exec of %r failed: %s", argv[0], e)
            raise ExecFailure(f"cannot execute {argv[0]!r}: {e}")
        return None
