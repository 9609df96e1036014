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

"""TOML credential files such as poetry's ``auth.toml``."""

from typing import List, Mapping

import toml

from ..errors import MergeTargetUnparseable
from .base import Format, MergeReport, Ownership, Sections
from .sections import HEADER_RE, Block, join_blocks, merge_blocks, split_blocks


def render_toml_section(name: str, body: Mapping[str, object]) -> str:
    values = {k: v for k, v in body.items() if v is not None}
    return f"[{name}]\n" + toml.dumps(values)


class TomlFormat(Format):
    def parse(self, text: str, path: str) -> List[Block]:
        try:
            toml.loads(text)
        except toml.TomlDecodeError as e:
            raise MergeTargetUnparseable(path, str(e)) from e
        # array-of-tables headers ([[x]]) do not match and stay inside the previous block
        return split_blocks(text, HEADER_RE)

    def merge(self, doc: List[Block], sections: Sections, ownership: Ownership, report: MergeReport) -> List[Block]:
        return merge_blocks(doc, sections, ownership, report, render_toml_section)

    def serialize(self, doc: List[Block], path: str) -> str:
        text = join_blocks(doc)
        try:
            toml.loads(text)
        except toml.TomlDecodeError as e:
            raise MergeTargetUnparseable(path, f"merged result is not valid TOML: {e}") from e
        return text
