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

"""Kubernetes client config (``~/.kube/config``).

Each owned section is one context name; its body carries the ``cluster``,
``user`` and ``context`` entries, all registered under that same name.

Owned entries are spliced into the original text, so unowned entries keep
their comments, quoting and layout. A document the splicer cannot follow
(flow-style lists or a flow-style top level) is re-emitted whole by PyYAML
when something owned changes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..errors import MergeTargetUnparseable
from .base import Format, MergeReport, Ownership, Sections

LOG = logging.getLogger(__name__)

ENTRY_LISTS = (("clusters", "cluster"), ("contexts", "context"), ("users", "user"))
LIST_KEYS = tuple(key for key, _ in ENTRY_LISTS)


@dataclass
class EntryList:
    """Where one top-level entry list sits in the source lines."""

    key_line: Optional[int] = None  # None when the key is absent
    value_end: Optional[int] = None  # end of an empty value (null, [] or nothing)
    indent: int = 0
    start: Optional[int] = None  # first item line; None for an empty list
    end: Optional[int] = None  # trailing blank and comment lines excluded
    items: List[str] = field(default_factory=list)
    output: Optional[List[str]] = None


@dataclass
class KubeDoc:
    data: Dict[str, Any]
    lines: List[str] = field(default_factory=list)
    layout: Optional[Dict[str, EntryList]] = None
    current_context_line: Optional[int] = None
    drop_current_context: bool = False
    preamble: str = ""


def new_document() -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Config", "preferences": {}}


def split_lines(text: str) -> List[str]:
    lines = [line + "\n" for line in text.split("\n")]
    if lines[-1] == "\n":
        lines.pop()
    return lines


def end_line(mark) -> int:
    """Exclusive end line of a node whose end mark is ``mark``."""
    return mark.line if mark.column == 0 else mark.line + 1


def is_filler(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def trim_filler(lines: List[str], lo: int, hi: int) -> int:
    while hi > lo and is_filler(lines[hi - 1]):
        hi -= 1
    return hi


def split_tail(text: str) -> Tuple[str, str]:
    lines = text.splitlines(keepends=True)
    cut = len(lines)
    while cut > 0 and is_filler(lines[cut - 1]):
        cut -= 1
    return "".join(lines[:cut]), "".join(lines[cut:])


def has_comment(text: str) -> bool:
    return any(line.strip().startswith("#") for line in text.splitlines())


def entry_text(entry: Dict[str, Any], indent: int) -> str:
    dumped = yaml.safe_dump([entry], default_flow_style=False, sort_keys=False)
    pad = " " * indent
    return "".join(pad + line if line.strip() else line for line in dumped.splitlines(keepends=True))


def read_layout(root, lines: List[str]) -> Optional[Tuple[Dict[str, EntryList], Optional[int]]]:
    if not isinstance(root, yaml.MappingNode) or root.flow_style or root.start_mark.column != 0:
        return None
    layout = {key: EntryList() for key in LIST_KEYS}
    current_line = None
    for key_node, value_node in root.value:
        key = key_node.value if isinstance(key_node, yaml.ScalarNode) else None
        if key == "current-context":
            current_line = key_node.start_mark.line
            if end_line(value_node.end_mark) != current_line + 1:
                return None
            continue
        if key not in layout:
            continue
        entry_list = layout[key]
        entry_list.key_line = key_node.start_mark.line
        if not isinstance(value_node, yaml.SequenceNode) or not value_node.value:
            entry_list.value_end = end_line(value_node.end_mark)
            continue
        if value_node.flow_style:
            return None
        starts: List[int] = []
        for item in value_node.value:
            line = item.start_mark.line
            if lines[line][:item.start_mark.column].strip() != "-" or (starts and line == starts[-1]):
                return None
            starts.append(line)
        indents = {lines[s].index("-") for s in starts}
        if len(indents) != 1:
            return None
        entry_list.indent = indents.pop()
        entry_list.start = starts[0]
        entry_list.end = trim_filler(lines, starts[-1] + 1, end_line(value_node.end_mark))
        bounds = starts[1:] + [entry_list.end]
        entry_list.items = ["".join(lines[s:e]) for s, e in zip(starts, bounds)]
    return layout, current_line


class KubeconfigFormat(Format):
    def parse(self, text: str, path: str) -> KubeDoc:
        try:
            data = yaml.safe_load(text) if text.strip() else None
            root = yaml.compose(text, Loader=yaml.SafeLoader) if data is not None else None
        except yaml.YAMLError as e:
            raise MergeTargetUnparseable(path, f"invalid YAML: {e}") from e
        if data is None:
            # a comment-only file keeps its comments above the new document
            return KubeDoc(new_document(), preamble="".join(split_lines(text)) if text.strip() else "")
        if not isinstance(data, dict):
            raise MergeTargetUnparseable(path, "top level is not a mapping")
        for list_key in LIST_KEYS:
            if data.get(list_key) is not None and not isinstance(data[list_key], list):
                raise MergeTargetUnparseable(path, f"'{list_key}' is not a list")

        if any(ch in text for ch in ("\x85", "\u2028", "\u2029")) or "\r" in text.replace("\r\n", ""):
            LOG.debug("%s uses unusual line breaks; it is re-emitted whole when it changes", path)
            return KubeDoc(data)
        lines = split_lines(text)
        found = read_layout(root, lines)
        if found is None or any(
            len(found[0][key].items) != len(data.get(key) or []) for key in LIST_KEYS
        ):
            LOG.debug("%s has a layout entries cannot be spliced into; it is re-emitted whole when it changes", path)
            return KubeDoc(data)
        layout, current_line = found
        return KubeDoc(data, lines, layout, current_line)

    def merge(self, doc: KubeDoc, sections: Sections, ownership: Ownership, report: MergeReport) -> KubeDoc:
        existing = set()
        changed = set()
        removed = set()
        appended = set()
        for list_key, kind in ENTRY_LISTS:
            entry_list = doc.layout[list_key] if doc.layout else EntryList()
            entries: List[Any] = []
            chunks: List[str] = []
            seen = set()
            for i, entry in enumerate(doc.data.get(list_key) or []):
                source = entry_list.items[i] if entry_list.items else ""
                name = entry.get("name") if isinstance(entry, dict) else None
                if not isinstance(name, str) or not ownership.owns(name):
                    entries.append(entry)
                    chunks.append(source)
                    continue
                _, tail = split_tail(source)
                if name in sections and name not in seen:
                    seen.add(name)
                    existing.add(name)
                    new_entry = {"name": name, kind: sections[name][kind]}
                    entries.append(new_entry)
                    if entry == new_entry:
                        chunks.append(source)
                    else:
                        changed.add(name)
                        chunks.append(entry_text(new_entry, entry_list.indent) + tail)
                else:
                    # stale owned entry, or a duplicate of one already kept
                    removed.add(name)
                    chunks.append(tail if has_comment(tail) else "")
            for name, body in sections.items():
                if name not in seen:
                    new_entry = {"name": name, kind: body[kind]}
                    entries.append(new_entry)
                    chunks.append(entry_text(new_entry, entry_list.indent))
                    appended.add(name)
            doc.data[list_key] = entries
            entry_list.output = chunks

        for name in sections:
            if name not in existing:
                report.added.append(name)
            elif name in changed or name in appended:
                # present in some lists only; the missing entries were appended
                report.replaced.append(name)
            else:
                report.unchanged.append(name)
        report.removed.extend(sorted(removed - set(sections)))

        current = doc.data.get("current-context")
        if isinstance(current, str) and current in removed and current not in sections:
            LOG.info("current-context %s no longer exists; unsetting it.", current)
            doc.data.pop("current-context")
            doc.drop_current_context = True
        return doc

    def serialize(self, doc: KubeDoc, path: str) -> str:
        if doc.layout is None:
            return doc.preamble + yaml.safe_dump(doc.data, default_flow_style=False, sort_keys=False)
        lines = list(doc.lines)
        edits = []
        appended = []
        for list_key in LIST_KEYS:
            entry_list = doc.layout[list_key]
            text = "".join(entry_list.output or [])
            if entry_list.start is not None:
                edits.append((entry_list.start, entry_list.end, text))
            elif not text:
                continue
            elif entry_list.key_line is not None:
                edits.append((entry_list.key_line, entry_list.value_end, f"{list_key}:\n{text}"))
            else:
                appended.append(f"{list_key}:\n{text}")
        if doc.drop_current_context and doc.current_context_line is not None:
            edits.append((doc.current_context_line, doc.current_context_line + 1, ""))
        for start, end, text in sorted(edits, reverse=True):
            lines[start:end] = [text]
        return "".join(lines) + "".join(appended)
