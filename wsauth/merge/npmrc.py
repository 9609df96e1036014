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

"""npm's ``.npmrc``: one ``key=value`` per line, keys are the sections."""

from typing import List, Optional, Tuple

from .base import Format, MergeReport, Ownership, Sections

Line = Tuple[Optional[str], str]


def line_key(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped or stripped[0] in "#;" or "=" not in stripped:
        return None
    return stripped.split("=", 1)[0].strip()


class NpmrcFormat(Format):
    def parse(self, text: str, path: str) -> List[Line]:
        return [(line_key(line), line) for line in text.splitlines(keepends=True)]

    def merge(self, doc: List[Line], sections: Sections, ownership: Ownership, report: MergeReport) -> List[Line]:
        out: List[Line] = []
        seen = set()
        for key, line in doc:
            if key is None or not ownership.owns(key):
                out.append((key, line))
                continue
            if key in sections and key not in seen:
                seen.add(key)
                rendered = f"{key}={sections[key]}\n"
                (report.unchanged if rendered == line else report.replaced).append(key)
                out.append((key, rendered))
            else:
                report.removed.append(key)
        if out and not out[-1][1].endswith("\n"):
            out[-1] = (out[-1][0], out[-1][1] + "\n")
        for key, value in sections.items():
            if key not in seen:
                out.append((key, f"{key}={value}\n"))
                report.added.append(key)
        return out

    def serialize(self, doc: List[Line], path: str) -> str:
        return "".join(line for _, line in doc)
