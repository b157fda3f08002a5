"""
Container Events
================
One decoded daemon message. Every event records the sub-stream it came from
(``stream``), which is the full tag for pushes and the reference for pulls.

Variants:
    Progress        — status / build output text
    Metadata        — built image id, or tag + digest (+ size) of a push
    Error           — daemon-reported error or a decoding failure
    EndOfSubStream  — the sub-stream reached end of input
"""
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class ContainerEvent:
    stream: str = ""


@dataclass(frozen=True)
class Progress(ContainerEvent):
    message: str = ""
    record: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class Metadata(ContainerEvent):
    image_id: str = ""
    tag: str = ""
    digest: str = ""
    size: int = 0

    @property
    def is_tag_digest(self) -> bool:
        return bool(self.tag and self.digest)


@dataclass(frozen=True)
class Error(ContainerEvent):
    message: str = ""
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class EndOfSubStream(ContainerEvent):
    pass
