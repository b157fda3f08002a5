"""
Registry Auth Model
Transport-ready credentials for a single image reference.
"""
from pydantic import BaseModel, ConfigDict


class RegistryAuth(BaseModel):
    model_config = ConfigDict(frozen=True)

    registry: str
    # Opaque X-Registry-Auth value (urlsafe base64 JSON)
    auth_header: str
    # Same credentials in the dict shape docker SDK calls accept
    auth_config: dict[str, str]
