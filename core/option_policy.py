"""Rsync Guard — Option Policy Table

Capability allow-list keyed by canonical long option name. The table lists
every option rsync itself puts on a server command line; anything missing
is refused. A fresh immutable table is built for each invocation from the
session flags and the restricted root, layered as:
1. Base modes for every known option
2. Base disabled set (never allowed through this guard)
3. Disabled when the restricted root is not "/" (link following, implied dirs)
4. Per-flag overrides (no-delete, read-only, write-only)
"""

from __future__ import annotations
import logging
from types import MappingProxyType
from typing import Dict, Mapping

from models.models import ArgMode, OptionPolicy, RestrictedRoot, SessionFlags

logger = logging.getLogger("rsync_guard.option_policy")

NONE = ArgMode.NONE
UNCHECKED = ArgMode.UNCHECKED
ON_RECEIVE = ArgMode.CHECKED_ON_RECEIVE
ALWAYS = ArgMode.ALWAYS_CHECKED

# Single-letter flags rsync bundles into one "-vlogDtpr" style cluster.
SHORT_NO_ARG: Mapping[str, str] = MappingProxyType({
    "A": "acls",
    "C": "cvs-exclude",
    "D": "devices",
    "E": "executability",
    "H": "hard-links",
    "I": "ignore-times",
    "J": "omit-link-times",
    "K": "keep-dirlinks",
    "L": "copy-links",
    "N": "crtimes",
    "O": "omit-dir-times",
    "R": "relative",
    "S": "sparse",
    "U": "atimes",
    "W": "whole-file",
    "X": "xattrs",
    "b": "backup",
    "c": "checksum",
    "d": "dirs",
    "g": "group",
    "k": "copy-dirlinks",
    "l": "links",
    "m": "prune-empty-dirs",
    "n": "dry-run",
    "o": "owner",
    "p": "perms",
    "q": "quiet",
    "r": "recursive",
    "s": "protect-args",
    "t": "times",
    "u": "update",
    "v": "verbose",
    "x": "one-file-system",
    "y": "fuzzy",
    "z": "compress",
})

# Short flags written as "-B1024" / "-@3".
SHORT_WITH_NUM: Mapping[str, str] = MappingProxyType({
    "@": "modify-window",
    "B": "block-size",
})

_BASE_MODES: Dict[str, ArgMode] = {
    # short-cluster names
    **{name: NONE for name in SHORT_NO_ARG.values()},
    "modify-window": UNCHECKED,
    "block-size": UNCHECKED,
    # long options
    "append": NONE,
    "backup-dir": ON_RECEIVE,
    "bwlimit": UNCHECKED,
    "checksum-choice": UNCHECKED,
    "checksum-seed": UNCHECKED,
    "compare-dest": ALWAYS,
    "compress-choice": UNCHECKED,
    "compress-level": UNCHECKED,
    "copy-dest": ALWAYS,
    "copy-unsafe-links": NONE,
    "daemon": NONE,
    "debug": UNCHECKED,
    "delay-updates": NONE,
    "delete": NONE,
    "delete-after": NONE,
    "delete-before": NONE,
    "delete-delay": NONE,
    "delete-during": NONE,
    "delete-excluded": NONE,
    "delete-missing-args": NONE,
    "existing": NONE,
    "fake-super": NONE,
    "files-from": ALWAYS,
    "force": NONE,
    "from0": NONE,
    "fsync": NONE,
    "groupmap": UNCHECKED,
    "iconv": UNCHECKED,
    "ignore-errors": NONE,
    "ignore-existing": NONE,
    "ignore-missing-args": NONE,
    "info": UNCHECKED,
    "inplace": NONE,
    "link-dest": ALWAYS,
    "list-only": NONE,
    "log-file": ALWAYS,
    "log-format": UNCHECKED,
    "max-alloc": UNCHECKED,
    "max-delete": UNCHECKED,
    "max-size": UNCHECKED,
    "min-size": UNCHECKED,
    "mkpath": NONE,
    "msgs2stderr": NONE,
    "munge-links": NONE,
    "new-compress": NONE,
    "no-W": NONE,
    "no-implied-dirs": NONE,
    "no-msgs2stderr": NONE,
    "no-munge-links": NONE,
    "no-r": NONE,
    "no-relative": NONE,
    "no-specials": NONE,
    "numeric-ids": NONE,
    "old-compress": NONE,
    "only-write-batch": ALWAYS,
    "open-noatime": NONE,
    "partial": NONE,
    "partial-dir": ON_RECEIVE,
    "preallocate": NONE,
    "remove-sent-files": NONE,
    "remove-source-files": NONE,
    "safe-links": NONE,
    "sender": NONE,
    "server": NONE,
    "size-only": NONE,
    "skip-compress": UNCHECKED,
    "specials": NONE,
    "stats": NONE,
    "stderr": UNCHECKED,
    "suffix": UNCHECKED,
    "super": NONE,
    "temp-dir": ON_RECEIVE,
    "timeout": UNCHECKED,
    "use-qsort": NONE,
    "usermap": UNCHECKED,
    "write-devices": NONE,
}

BASE_MODES: Mapping[str, ArgMode] = MappingProxyType(_BASE_MODES)

# Role markers are only honoured in the command prefix.
BASE_DISABLED = frozenset({
    "daemon",
    "write-devices",
    "no-munge-links",
    "protect-args",
    "server",
    "sender",
})

# Following links or skipping implied dirs can walk out of a subtree.
SUBTREE_DISABLED = frozenset({
    "copy-links",
    "copy-dirlinks",
    "keep-dirlinks",
    "copy-unsafe-links",
    "no-implied-dirs",
})

DELETE_FAMILY = frozenset(
    name for name in _BASE_MODES if name.startswith(("delete", "remove"))
)

READ_ONLY_DISABLED = frozenset({"log-file"})

WRITE_ONLY_DISABLED = frozenset({"remove-source-files", "remove-sent-files"})

# Relative values rsync joins onto every transferred file's directory.
PER_DIRECTORY_VALUES = frozenset({"partial-dir"})


def _is_enabled(name: str, flags: SessionFlags, root: RestrictedRoot) -> bool:
    if name not in BASE_MODES or name in BASE_DISABLED:
        return False
    if not root.is_filesystem_root and name in SUBTREE_DISABLED:
        return False
    if flags.suppress_delete_options and name in DELETE_FAMILY:
        return False
    if flags.restrict_to_read_only and name in READ_ONLY_DISABLED:
        return False
    if flags.restrict_to_write_only and name in WRITE_ONLY_DISABLED:
        return False
    return True


def policy_for(name: str, flags: SessionFlags, root: RestrictedRoot) -> OptionPolicy:
    """Policy for one canonical option name. Unknown names come back disabled."""
    mode = BASE_MODES.get(name, ArgMode.NONE)
    return OptionPolicy(name=name, argument_mode=mode, enabled=_is_enabled(name, flags, root))


class PolicyTable:
    """Immutable per-invocation view over policy_for()."""

    def __init__(self, flags: SessionFlags, root: RestrictedRoot):
        self.flags = flags
        self.root = root
        self._entries: Mapping[str, OptionPolicy] = MappingProxyType({
            name: policy_for(name, flags, root) for name in BASE_MODES
        })
        disabled = sorted(n for n, p in self._entries.items() if not p.enabled)
        logger.debug(
            "Policy table built: root=%s flags=%s disabled=%d",
            root, ",".join(flags.active()) or "-", len(disabled),
        )

    def lookup(self, name: str) -> OptionPolicy:
        entry = self._entries.get(name)
        if entry is None:
            return OptionPolicy(name=name, argument_mode=ArgMode.NONE, enabled=False)
        return entry

    def short(self, letter: str) -> OptionPolicy:
        name = SHORT_NO_ARG.get(letter)
        if name is None:
            return OptionPolicy(name=letter, argument_mode=ArgMode.NONE, enabled=False)
        return self.lookup(name)

    def numeric(self, letter: str) -> OptionPolicy:
        name = SHORT_WITH_NUM.get(letter)
        if name is None:
            return OptionPolicy(name=letter, argument_mode=ArgMode.NONE, enabled=False)
        return self.lookup(name)

    @property
    def entries(self) -> Mapping[str, OptionPolicy]:
        return self._entries

    def __contains__(self, name: str) -> bool:
        return name in self._entries


def build_policy_table(flags: SessionFlags, root: RestrictedRoot) -> PolicyTable:
    return PolicyTable(flags, root)
