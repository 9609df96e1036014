# MIT License
# Copyright (c) 2025 Gordon Trevorrow
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# Author: Gordon Trevorrow

"""Merge owned sections into shared config files without touching anything else.

Every supported file format implements the same three steps (``parse``,
``merge``, ``serialize``); the format is selected by the target's ``FileKind``.
The engine is the only writer of target files: it refuses to write when the
existing file cannot be parsed, skips the write when nothing changed and
otherwise replaces the file atomically.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..errors import AtomicWriteFailed, MergeTargetUnparseable
from ..fileio import atomic_write_bytes, file_mode

LOG = logging.getLogger(__name__)

Sections = Mapping[str, Any]


class FileKind(enum.Enum):
    INI = "ini"
    TOML = "toml"
    NPMRC = "npmrc"
    KUBECONFIG = "kubeconfig"


@dataclass(frozen=True)
class Ownership:
    """Which section names this tool regenerates.

    A name is owned when it is listed in ``names`` or starts with one of
    ``prefixes``, unless ``keep_names``/``keep_prefixes`` pin it. Pinned names
    belong to accounts that could not be enumerated this run; their last good
    sections stay in place.
    """

    prefixes: Tuple[str, ...] = ()
    names: FrozenSet[str] = frozenset()
    keep_prefixes: Tuple[str, ...] = ()
    keep_names: FrozenSet[str] = frozenset()

    def owns(self, name: str) -> bool:
        if name in self.keep_names or name.startswith(self.keep_prefixes):
            return False
        return name in self.names or name.startswith(self.prefixes)


@dataclass(frozen=True)
class MergeTarget:
    path: str
    kind: FileKind
    ownership: Ownership

    @property
    def expanded_path(self) -> str:
        return os.path.expanduser(self.path)


@dataclass(frozen=True)
class Projection:
    """Owned sections destined for one target file."""

    target: MergeTarget
    sections: Dict[str, Any]


@dataclass
class MergeReport:
    path: str
    added: List[str] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    written: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.added or self.replaced or self.removed)

    def summary(self) -> str:
        if not self.written:
            return f"{self.path}: up to date"
        parts = []
        for label, names in (("added", self.added), ("replaced", self.replaced), ("removed", self.removed)):
            if names:
                parts.append(f"{label} {', '.join(names)}")
        return f"{self.path}: " + "; ".join(parts)


class Format:
    """Capability implemented once per FileKind."""

    def parse(self, text: str, path: str) -> Any:
        raise NotImplementedError

    def merge(self, doc: Any, sections: Sections, ownership: Ownership, report: MergeReport) -> Any:
        raise NotImplementedError

    def serialize(self, doc: Any, path: str) -> str:
        raise NotImplementedError


def decode_text(raw: bytes, path: str) -> str:
    if b"\x00" in raw:
        raise MergeTargetUnparseable(path, "file contains NUL bytes")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MergeTargetUnparseable(path, f"not valid UTF-8: {e}") from e


def format_for(kind: FileKind) -> Format:
    from .ini import IniFormat
    from .kubeconfig import KubeconfigFormat
    from .npmrc import NpmrcFormat
    from .toml_format import TomlFormat

    return {
        FileKind.INI: IniFormat,
        FileKind.TOML: TomlFormat,
        FileKind.NPMRC: NpmrcFormat,
        FileKind.KUBECONFIG: KubeconfigFormat,
    }[kind]()


def render(target: MergeTarget, sections: Sections, existing: Optional[str] = None) -> Tuple[str, MergeReport]:
    """Pure merge: existing text + owned sections -> new text and report.

    Section names outside the target's ownership are never written; they are
    dropped with a warning.
    """
    owned = {}
    for name, body in sections.items():
        if target.ownership.owns(name):
            owned[name] = body
        else:
            LOG.warning("%s: not writing section %s; it is not owned by this tool", target.path, name)
    fmt = format_for(target.kind)
    report = MergeReport(path=target.path)
    doc = fmt.parse(existing or "", target.path)
    doc = fmt.merge(doc, owned, target.ownership, report)
    return fmt.serialize(doc, target.path), report


def apply(target: MergeTarget, sections: Sections) -> MergeReport:
    """Merge ``sections`` into the file at ``target`` and write it atomically."""
    path = target.expanded_path
    try:
        with open(path, "rb") as f:
            raw = f.read()
        existing = decode_text(raw, target.path)
    except FileNotFoundError:
        existing = None
    except OSError as e:
        raise MergeTargetUnparseable(target.path, f"cannot read existing file: {e}") from e

    new_text, report = render(target, sections, existing)
    if existing is not None and (new_text == existing or not report.changed):
        LOG.debug("%s is up to date", target.path)
        return report

    parent = os.path.dirname(path)
    try:
        if parent:
            os.makedirs(parent, exist_ok=True)
        atomic_write_bytes(path, new_text.encode("utf-8"), mode=file_mode(path, 0o600))
    except OSError as e:
        raise AtomicWriteFailed(target.path, str(e)) from e
    report.written = True
    LOG.info("%s", report.summary())
    return report
