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

"""INI profile files (``~/.aws/config``, ``~/.aws/credentials``)."""

import configparser
import logging
from typing import List, Mapping

from ..errors import MergeTargetUnparseable
from .base import Format, MergeReport, Ownership, Sections
from .sections import HEADER_RE, Block, join_blocks, merge_blocks, split_blocks

LOG = logging.getLogger(__name__)


def render_ini_section(name: str, body: Mapping[str, object]) -> str:
    lines = [f"[{name}]\n"]
    for key, value in body.items():
        if value is None:
            continue
        lines.append(f"{key} = {value}\n")
    return "".join(lines)


class IniFormat(Format):
    def parse(self, text: str, path: str) -> List[Block]:
        cp = configparser.ConfigParser(interpolation=None, strict=False)
        try:
            cp.read_string(text, source=path)
        except configparser.MissingSectionHeaderError as e:
            raise MergeTargetUnparseable(path, f"content before the first section header (line {e.lineno})") from e
        except configparser.ParsingError as e:
            # malformed lines stay verbatim inside their block
            LOG.warning("%s has malformed lines %s; leaving them untouched.", path, [n for n, _ in e.errors])
        return split_blocks(text, HEADER_RE)

    def merge(self, doc: List[Block], sections: Sections, ownership: Ownership, report: MergeReport) -> List[Block]:
        return merge_blocks(doc, sections, ownership, report, render_ini_section)

    def serialize(self, doc: List[Block], path: str) -> str:
        return join_blocks(doc)
