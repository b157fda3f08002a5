"""
Prefix Writer
Text sink wrapper that prepends a prefix to every output line.
"""
from typing import TextIO


class PrefixWriter:
    def __init__(self, sink: TextIO, prefix: str = "") -> None:
        self.sink = sink
        self.prefix = prefix
        self._pending = ""

    def write(self, text: str) -> int:
        if not self.prefix:
            self.sink.write(text)
            return len(text)

        data = self._pending + text
        lines = data.split("\n")
        # Last element is an incomplete line (empty when text ended with "\n")
        self._pending = lines.pop()
        for line in lines:
            self.sink.write(f"{self.prefix}{line}\n")
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self.sink.write(f"{self.prefix}{self._pending}")
            self._pending = ""
        if hasattr(self.sink, "flush"):
            self.sink.flush()
