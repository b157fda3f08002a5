"""
Image Reference Models
======================
Pydantic models describing a parsed image reference and the digest reported
for each pushed tag.

Fields (ImageReference):
    name       — normalized repository name (e.g. index.docker.io/library/ubuntu)
    reference  — canonical reference; ``name@digest`` once resolved
    digest     — content digest (empty until resolved, unless parsed from one)
    tag        — tag the reference was parsed with (empty for digest references)
"""
from pydantic import BaseModel, ConfigDict


class ImageReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    reference: str
    digest: str = ""
    tag: str = ""

    @property
    def is_resolved(self) -> bool:
        return bool(self.digest) and self.reference == f"{self.name}@{self.digest}"


class TagDigest(BaseModel):
    tag: str
    digest: str
    size: int = 0
