"""Rsync Guard — Path Confinement Validator

Every path-valued argument goes through validate() before rsync sees it.

Defence layers:
1. Reject any literal ".." component before touching the filesystem
2. Collapse duplicate separators, strip a leading "./"
3. Anchor absolute transfer paths at the restricted root
4. Canonicalize, resolving symlinks; for paths that do not exist yet,
   canonicalize the nearest existing ancestor and re-append the rest
5. Verify the canonical path is the root or below it

Relative option values are resolved by rsync from the destination, not
from the root, so validate_value() repeats the check from every directory
rsync may resolve them against.
"""

from __future__ import annotations
import logging
import os
import re
from typing import List, Optional, Sequence, Tuple

from core.errors import ConfinementViolation
from models.models import RestrictedRoot, SafePath

logger = logging.getLogger("rsync_guard.confinement")

HAS_DOT_DOT_RE = re.compile(r"(^|/)\.\.(/|$)")
_DUP_SEP_RE = re.compile(r"/{2,}")


def reject_parent_refs(text: str) -> None:
    """Cheap textual filter, applied before any expansion or resolution."""
    if HAS_DOT_DOT_RE.search(text):
        raise ConfinementViolation(f"'..' component in {text!r}", token=text)


def normalize_text(text: str) -> str:
    path = _DUP_SEP_RE.sub("/", text)
    while path.startswith("./") and len(path) > 2:
        path = path[2:]
    return path


def _split_trailing(path: str) -> Tuple[str, str]:
    """Separate a trailing "/" or "/." so it can be put back after checks."""
    if len(path) > 2 and path.endswith("/."):
        return path[:-2], "/."
    if len(path) > 1 and path.endswith("/"):
        return path[:-1], "/"
    return path, ""


class PathConfinementValidator:
    def __init__(self, root: RestrictedRoot):
        self.root = root

    def validate(self, candidate: str, anchor_absolute: bool = True,
                 base: Optional[str] = None) -> SafePath:
        """Confine one path.

        anchor_absolute=True is for transfer paths: "/docs" means "docs"
        under the root and the forwarded text is root-relative.
        anchor_absolute=False is for option values: an absolute value is
        taken literally and must already resolve inside the root.
        base is the directory a relative candidate is resolved from
        (default: the root).
        """
        if not candidate:
            raise ConfinementViolation("empty path", token=candidate)
        if "\x00" in candidate:
            raise ConfinementViolation("NUL byte in path", token=candidate)
        reject_parent_refs(candidate)

        path = normalize_text(candidate)
        body, trailing = _split_trailing(path)

        if os.path.isabs(body):
            if anchor_absolute:
                target = self.root.slash + body.lstrip("/")
            else:
                target = body
        else:
            target = os.path.join(base or self.root.path, body)

        canonical = self._canonicalize(target)
        if not self.root.contains(canonical):
            logger.warning(
                "Confinement escape attempt: %r resolves to %r outside %s",
                candidate, canonical, self.root,
            )
            raise ConfinementViolation(
                f"{candidate!r} resolves outside the restricted root", token=candidate
            )

        if anchor_absolute:
            forwarded = self._root_relative(target) + trailing
        elif os.path.isabs(body):
            forwarded = target + trailing
        else:
            forwarded = body + trailing
        return SafePath(forwarded=forwarded, canonical=canonical)

    def validate_value(self, value: str, anchors: Sequence[str],
                       per_directory: bool = False) -> SafePath:
        """Confine an option value rsync may resolve from any of `anchors`.

        An absolute value is checked once, literally. A relative one must
        stay inside the root from every anchor; with per_directory (a
        --partial-dir style value, joined onto each file's directory) no
        existing component below an anchor may be a symlink either.
        """
        safe = self.validate(value, anchor_absolute=False)
        if os.path.isabs(normalize_text(value)):
            return safe
        for anchor in anchors:
            self.validate(value, anchor_absolute=False, base=anchor)
            if per_directory:
                self._reject_symlink_components(anchor, safe.forwarded)
        return safe

    def _reject_symlink_components(self, anchor: str, relative: str) -> None:
        current = anchor
        for part in relative.split("/"):
            if part in ("", "."):
                continue
            current = os.path.join(current, part)
            if os.path.islink(current):
                logger.warning("Symlink %r under %s in a per-directory value", current, anchor)
                raise ConfinementViolation(f"symlink component {current!r}", token=relative)
            if not os.path.lexists(current):
                return

    def _root_relative(self, target: str) -> str:
        normalized = os.path.normpath(target)
        if normalized == self.root.path:
            return "."
        rel = normalized[len(self.root.slash):]
        return rel or "."

    def _canonicalize(self, path: str) -> str:
        try:
            return os.path.realpath(path, strict=True)
        except OSError:
            pass

        # Destination may not exist yet: resolve the nearest existing ancestor.
        head = os.path.normpath(path)
        missing: List[str] = []
        while True:
            if os.path.lexists(head) and not os.path.exists(head):
                # Dangling symlink or loop; its target cannot be vetted.
                raise ConfinementViolation(f"unresolvable link {head!r}", token=path)
            parent, name = os.path.split(head)
            if parent == head:
                return os.path.join(parent, *reversed(missing))
            missing.append(name)
            head = parent
            try:
                base = os.path.realpath(head, strict=True)
            except OSError:
                continue
            return os.path.join(base, *reversed(missing))
