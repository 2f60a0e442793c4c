from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

ACTIVE_SUFFIX = "rpm"
MAX_SLES_VERSION = 16
DOMAIN_TEMPLATE = "{vm_name}.{region}.cloudapp.azure.com"


class HostRecord(BaseModel):
    """One row of the machines table."""

    model_config = ConfigDict(frozen=True)

    prefix: str
    sles_version: int = Field(ge=0)
    sp_version: int = Field(ge=0)
    suffix: str = ""

    @field_validator("prefix", "suffix", mode="before")
    @classmethod
    def strip_text(cls, value: object) -> object:
        if isinstance(value, str):
            return value.replace("\r", "").strip()
        return value

    @field_validator("sles_version", "sp_version", mode="before")
    @classmethod
    def strip_number(cls, value: object) -> object:
        if isinstance(value, str):
            return value.replace("\r", "").strip()
        return value

    @property
    def vm_name(self) -> str:
        return f"{self.prefix}{self.sles_version}sp{self.sp_version}{self.suffix}"

    @property
    def is_active(self) -> bool:
        # helm hosts and SLES 16+ are installed manually
        return self.suffix == ACTIVE_SUFFIX and self.sles_version < MAX_SLES_VERSION

    def fqdn(self, region: str) -> str:
        return DOMAIN_TEMPLATE.format(vm_name=self.vm_name, region=region)
