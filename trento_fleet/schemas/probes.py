from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Transport(str, Enum):
    DIRECT = "direct"
    TUNNELED = "tunneled"


class EndpointProbe(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    transport: Transport = Transport.DIRECT
    port: int = Field(default=80, ge=1, le=65535)
    expected_status_class: int = Field(default=2, ge=1, le=5)

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        path = value.strip()
        if not path.startswith("/"):
            raise ValueError("probe path must start with '/'")
        return path

    @property
    def tunneled(self) -> bool:
        return self.transport is Transport.TUNNELED

    def accepts(self, status_code: int) -> bool:
        return status_code // 100 == self.expected_status_class


class ProbeSet(BaseModel):
    probes: list[EndpointProbe] = Field(min_length=1)
