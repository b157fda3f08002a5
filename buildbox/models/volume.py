"""
Volume Model
============
Host path to container path mapping with a read mode.

Only read-write volumes are copied back out of a container when the run is
nested inside another container.
"""
from enum import Enum

from pydantic import BaseModel, field_validator


class VolumeMode(str, Enum):
    READONLY = "ro"
    READWRITE = "rw"

    @property
    def is_rw(self) -> bool:
        return self is VolumeMode.READWRITE


_MODE_ALIASES = {
    "ro": VolumeMode.READONLY,
    "readonly": VolumeMode.READONLY,
    "rw": VolumeMode.READWRITE,
    "readwrite": VolumeMode.READWRITE,
}


class Volume(BaseModel):
    host_path: str
    container_path: str
    mode: VolumeMode = VolumeMode.READONLY

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v):
        if isinstance(v, VolumeMode):
            return v
        if v is None or v == "":
            return VolumeMode.READONLY
        mode = _MODE_ALIASES.get(str(v).strip().lower())
        if mode is None:
            raise ValueError(f"unsupported volume mode {v!r}, expected one of: ro, rw")
        return mode

    @field_validator("container_path")
    @classmethod
    def require_absolute_container_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("container_path must be absolute")
        return v

    def as_bind(self) -> str:
        """Render as a ``host:container[:ro]`` bind string."""
        bind = f"{self.host_path}:{self.container_path}"
        if not self.mode.is_rw:
            bind += ":ro"
        return bind
