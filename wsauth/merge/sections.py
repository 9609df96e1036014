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

"""Header-delimited text files (INI, TOML) split into raw blocks.

Each block keeps its exact original text, so a block this tool does not own
is written back byte for byte. The blank and comment lines that trail a block
stay in place when the block's body is regenerated or the block is dropped.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern

from .base import MergeReport, Ownership, Sections


def is_comment(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and stripped[0] in "#;"


@dataclass
class Block:
    name: Optional[str]
    text: str

    def split_trailing(self, comments: bool = True):
        """Split off the trailing run of blank (and, by default, comment) lines."""
        lines = self.text.splitlines(keepends=True)
        cut = len(lines)
        while cut > 0 and (not lines[cut - 1].strip() or (comments and is_comment(lines[cut - 1]))):
            cut -= 1
        return "".join(lines[:cut]), "".join(lines[cut:])


def split_blocks(text: str, header: Pattern) -> List[Block]:
    blocks = [Block(None, "")]
    for line in text.splitlines(keepends=True):
        m = header.match(line)
        if m:
            blocks.append(Block(m.group(1).strip(), line))
        else:
            blocks[-1].text += line
    if not blocks[0].text:
        blocks.pop(0)
    return blocks


def join_blocks(blocks: List[Block]) -> str:
    return "".join(b.text for b in blocks)


def merge_blocks(
    blocks: List[Block],
    sections: Sections,
    ownership: Ownership,
    report: MergeReport,
    render_section: Callable[[str, object], str],
) -> List[Block]:
    out: List[Block] = []
    seen = set()
    for block in blocks:
        if block.name is None or not ownership.owns(block.name):
            out.append(block)
            continue
        body, trailing = block.split_trailing()
        if block.name in sections and block.name not in seen:
            seen.add(block.name)
            rendered = render_section(block.name, sections[block.name])
            if rendered == body:
                report.unchanged.append(block.name)
            else:
                report.replaced.append(block.name)
            out.append(Block(block.name, rendered + trailing))
        else:
            # stale owned section, or a duplicate header of one already written
            report.removed.append(block.name)
            if any(is_comment(line) for line in trailing.splitlines()):
                out.append(Block(None, trailing))

    for name, body in sections.items():
        if name in seen:
            continue
        text = render_section(name, body)
        if out:
            prev = out[-1]
            if not prev.text.endswith("\n"):
                prev.text += "\n"
            if prev.text.strip():
                _, trailing = prev.split_trailing(comments=False)
                if not trailing:
                    prev.text += "\n"
        out.append(Block(name, text))
        report.added.append(name)
    return out


HEADER_RE = re.compile(r"^\s*\[([^\[\]]+)\]\s*(?:[#;].*)?$")
