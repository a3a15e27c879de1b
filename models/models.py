"""Rsync Guard — Data Models

Everything here is built once per invocation from trusted startup input
or from the already-vetted command, and never mutated afterwards:
- SessionFlags: frozen, implications applied by resolve()
- RestrictedRoot: canonical absolute directory
- OptionPolicy: one allow-list entry, tagged by ArgMode
- Token / SanitizedInvocation: classifier output, order preserved
- AuditRecord: one line in the audit log
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Tuple
import os


class Role(Enum):
    SENDER = "SENDER"
    RECEIVER = "RECEIVER"

    @property
    def direction(self) -> str:
        """Transfer direction as seen from the client side."""
        return {
            Role.SENDER: "pull",
            Role.RECEIVER: "push",
        }[self]


class ArgMode(Enum):
    NONE = "NONE"
    UNCHECKED = "UNCHECKED"
    CHECKED_ON_RECEIVE = "CHECKED_ON_RECEIVE"
    ALWAYS_CHECKED = "ALWAYS_CHECKED"

    @property
    def takes_value(self) -> bool:
        return self is not ArgMode.NONE

    def is_checked_for(self, role: Role) -> bool:
        if self is ArgMode.ALWAYS_CHECKED:
            return True
        if self is ArgMode.CHECKED_ON_RECEIVE:
            return role is Role.RECEIVER
        return False


class TokenKind(Enum):
    SHORT_CLUSTER = "SHORT_CLUSTER"
    LONG_OPTION = "LONG_OPTION"
    OPTION_VALUE = "OPTION_VALUE"
    PATH_ARGUMENT = "PATH_ARGUMENT"
    REGION_SEPARATOR = "REGION_SEPARATOR"


class Outcome(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DRY_RUN = "dry-run"


@dataclass(frozen=True)
class SessionFlags:
    restrict_to_write_only: bool = False
    restrict_to_read_only: bool = False
    force_munge_links: bool = False
    suppress_delete_options: bool = False
    disable_locking: bool = False
    use_privilege_helper: bool = False
    no_overwrite: bool = False

    def __post_init__(self):
        if self.restrict_to_read_only and self.restrict_to_write_only:
            raise ValueError("read-only and write-only sessions are mutually exclusive")
        if self.restrict_to_read_only and not (self.suppress_delete_options and self.disable_locking):
            raise ValueError(
                "read-only sessions must also suppress delete options and locking "
                "(use SessionFlags.resolve)"
            )

    @classmethod
    def resolve(
        cls,
        read_only: bool = False,
        write_only: bool = False,
        munge_links: bool = False,
        no_delete: bool = False,
        no_lock: bool = False,
        privilege_helper: bool = False,
        no_overwrite: bool = False,
    ) -> SessionFlags:
        """Build flags from startup switches, applying the read-only implications."""
        return cls(
            restrict_to_write_only=write_only,
            restrict_to_read_only=read_only,
            force_munge_links=munge_links,
            suppress_delete_options=no_delete or read_only,
            disable_locking=no_lock or read_only,
            use_privilege_helper=privilege_helper,
            no_overwrite=no_overwrite,
        )

    def active(self) -> Tuple[str, ...]:
        """Short names of the flags that are set, in a fixed order."""
        names = (
            ("ro", self.restrict_to_read_only),
            ("wo", self.restrict_to_write_only),
            ("munge", self.force_munge_links),
            ("no-del", self.suppress_delete_options),
            ("no-lock", self.disable_locking),
            ("helper", self.use_privilege_helper),
            ("no-overwrite", self.no_overwrite),
        )
        return tuple(name for name, on in names if on)


@dataclass(frozen=True)
class RestrictedRoot:
    path: str

    def __post_init__(self):
        if not isinstance(self.path, str) or not os.path.isabs(self.path):
            raise ValueError(f"restricted root must be an absolute path, got {self.path!r}")
        if os.path.realpath(self.path) != self.path:
            raise ValueError(f"restricted root must be canonical, got {self.path!r}")

    @classmethod
    def from_path(cls, raw: str) -> RestrictedRoot:
        if not raw:
            raise ValueError("restricted root is empty")
        resolved = os.path.realpath(os.path.expanduser(raw))
        if not os.path.isdir(resolved):
            raise ValueError(f"restricted root {raw!r} is not a directory")
        return cls(resolved)

    @property
    def is_filesystem_root(self) -> bool:
        return self.path == os.sep

    @property
    def slash(self) -> str:
        return self.path if self.is_filesystem_root else self.path + os.sep

    def contains(self, canonical: str) -> bool:
        return canonical == self.path or canonical.startswith(self.slash)

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class OptionPolicy:
    name: str
    argument_mode: ArgMode
    enabled: bool

    @property
    def takes_value(self) -> bool:
        return self.argument_mode.takes_value


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    raw: str
    position: int
    name: Optional[str] = None
    value: Optional[str] = None


@dataclass(frozen=True)
class SafePath:
    forwarded: str
    canonical: str


@dataclass(frozen=True)
class SanitizedInvocation:
    role: Role
    options: Tuple[str, ...]
    paths: Tuple[str, ...]

    def argv_options(self) -> Tuple[str, ...]:
        """Options as rsync expects them, role markers first."""
        prefix = ("--server", "--sender") if self.role is Role.SENDER else ("--server",)
        return prefix + self.options


def _escape(text: str) -> str:
    """Make untrusted text safe for a single audit line."""
    out = []
    for ch in text:
        if ch == "\\":
            out.append("\\\\")
        elif ch.isprintable() and ch not in "\r\n":
            out.append(ch)
        else:
            out.append(f"\\x{ord(ch):02x}" if ord(ch) < 0x100 else f"\\u{ord(ch):04x}")
    return "".join(out)


def _render_list(items) -> str:
    return "[" + " ".join(_escape(i) for i in items) + "]"


@dataclass
class AuditRecord:
    client_identity: str
    session_flags: SessionFlags
    restricted_root: str
    outcome: Outcome
    sanitized_invocation: Optional[SanitizedInvocation] = None
    role: Optional[Role] = None
    error_kind: Optional[str] = None
    rejected_token: Optional[str] = None
    raw_command: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_line(self) -> str:
        parts = [
            self.timestamp.isoformat(timespec="seconds"),
            f"host={_escape(self.client_identity)}",
            f"root={_escape(self.restricted_root)}",
            f"flags={','.join(self.session_flags.active()) or '-'}",
            f"outcome={self.outcome.value}",
        ]
        role = self.role
        if role is None and self.sanitized_invocation is not None:
            role = self.sanitized_invocation.role
        if role is not None:
            parts.append(f"role={role.direction}")
        if self.sanitized_invocation is not None:
            parts.append(f"opts={_render_list(self.sanitized_invocation.argv_options())}")
            parts.append(f"args={_render_list(self.sanitized_invocation.paths)}")
        if self.error_kind is not None:
            parts.append(f"error={self.error_kind}")
        if self.rejected_token is not None:
            parts.append(f"token={_escape(self.rejected_token)}")
        if self.raw_command is not None and self.outcome is Outcome.REJECTED:
            parts.append(f"command={_escape(self.raw_command)}")
        return " ".join(parts)
