"""Rsync Guard — Audit Logger

Appends one human-readable line per invocation attempt, accepted or not.
- The log file is never created here: if it does not exist, auditing is off
- Symlinks and non-regular files are refused (O_NOFOLLOW + fstat)
- Cross-process flock around each write so concurrent sessions do not interleave
- Write failures are reported on the diagnostic logger and otherwise ignored
"""

from __future__ import annotations
import fcntl
import logging
import os
import socket
import stat
from typing import Mapping, Optional

from models.models import AuditRecord

logger = logging.getLogger("rsync_guard.audit_log")

DEFAULT_AUDIT_LOG = os.path.expanduser("~/rsync-guard.log")
MAX_LINE_LENGTH = 16 * 1024
CONNECTION_ENV = "SSH_CONNECTION"


def client_identity(environ: Mapping[str, str], resolve: bool = True) -> str:
    """Best-effort name of the peer: reverse DNS of the SSH client address."""
    conn = environ.get(CONNECTION_ENV, "").split()
    if not conn:
        return "unknown"
    host = conn[0]
    if host.startswith("::ffff:"):
        host = host[7:]
    if not resolve:
        return host
    try:
        return socket.gethostbyaddr(host)[0]
    except (OSError, UnicodeError):
        return host


class AuditLogger:
    def __init__(self, log_path: Optional[str] = DEFAULT_AUDIT_LOG):
        self.log_path = log_path

    def record(self, record: AuditRecord) -> bool:
        """Append one record. Returns False when nothing was written."""
        if not self.log_path:
            return False
        line = record.to_line()
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH] + f" ...[TRUNCATED, {len(line)} chars total]"
        data = (line + "\n").encode("utf-8", errors="backslashreplace")

        open_flags = os.O_WRONLY | os.O_APPEND
        if hasattr(os, "O_NOFOLLOW"):
            open_flags |= os.O_NOFOLLOW
        if hasattr(os, "O_NONBLOCK"):
            open_flags |= os.O_NONBLOCK
        try:
            fd = os.open(self.log_path, open_flags)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.debug("Audit log %r not writable: %s", self.log_path, e)
            return False

        try:
            if not stat.S_ISREG(os.fstat(fd).st_mode):
                logger.debug("Audit log %r is not a regular file, skipping", self.log_path)
                return False
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                os.write(fd, data)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.debug("Failed to append audit record: %s", e)
            return False
        finally:
            os.close(fd)
        return True
