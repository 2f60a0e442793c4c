from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REGION = "westeurope"
DEFAULT_KEY_NAME = "id_ed25519"


class ConfigurationError(RuntimeError):
    pass


class Settings(BaseSettings):
    azure_vms_location: str = Field(default=DEFAULT_REGION)
    azure_resource_group: str = Field(default="")
    azure_owner_tag: str = Field(default="")
    azure_blob_storage: str = Field(default="")
    azure_blob_storage_tf_state_container: str = Field(default="tfstate")

    machines_file: str = Field(default=".machines.conf.csv")
    terraform_dir: str = Field(default="terraform")
    logs_dir: str = Field(default="logs")

    ssh_username: str = Field(default="cloudadmin")
    ssh_keys_dir: str = Field(default=".ssh-keys")
    ssh_private_key_path: str = Field(default="")
    ssh_connect_timeout: int = Field(default=10)
    known_hosts_file: str = Field(default="~/.ssh/known_hosts")
    private_ssh_key_content: str = Field(default="")
    public_ssh_key_content: str = Field(default="")

    readiness_max_retries: int = Field(default=5)
    readiness_initial_wait: float = Field(default=10.0)
    readiness_backoff_multiplier: float = Field(default=2.0)
    readiness_connect_timeout: float = Field(default=5.0)
    readiness_max_time: float = Field(default=10.0)
    readiness_workers: int = Field(default=1)

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_readiness(self) -> "Settings":
        issues: list[str] = []
        if self.readiness_max_retries < 1:
            issues.append("READINESS_MAX_RETRIES must be at least 1.")
        if self.readiness_initial_wait < 0:
            issues.append("READINESS_INITIAL_WAIT must not be negative.")
        if self.readiness_backoff_multiplier < 1:
            issues.append("READINESS_BACKOFF_MULTIPLIER must be at least 1.")
        if self.readiness_connect_timeout <= 0 or self.readiness_max_time <= 0:
            issues.append("READINESS_CONNECT_TIMEOUT and READINESS_MAX_TIME must be positive.")
        if self.readiness_workers < 1:
            issues.append("READINESS_WORKERS must be at least 1.")
        if self.ssh_connect_timeout <= 0:
            issues.append("SSH_CONNECT_TIMEOUT must be positive.")
        if not self.azure_vms_location.strip():
            self.azure_vms_location = DEFAULT_REGION
        if issues:
            raise ValueError(" ".join(issues))
        return self

    @property
    def region(self) -> str:
        return self.azure_vms_location.strip()

    @property
    def keys_dir(self) -> Path:
        return Path(self.ssh_keys_dir).expanduser()

    @property
    def private_key_path(self) -> Path:
        if self.ssh_private_key_path:
            return Path(self.ssh_private_key_path).expanduser()
        return self.keys_dir / DEFAULT_KEY_NAME

    @property
    def public_key_path(self) -> Path:
        return self.private_key_path.with_name(self.private_key_path.name + ".pub")

    def require(self, *names: str) -> None:
        """Raise ConfigurationError listing every named setting that is empty."""
        missing = [name.upper() for name in names if not str(getattr(self, name, "") or "").strip()]
        if missing:
            raise ConfigurationError(f"{', '.join(missing)} must be set in .env or environment variables.")


def load_settings(env_file: Optional[str] = None) -> Settings:
    if env_file is not None and not Path(env_file).is_file():
        raise ConfigurationError(f".env file not found at {env_file}")
    try:
        if env_file is None:
            return Settings()
        return Settings(_env_file=env_file)
    except ValidationError as exc:
        details = "; ".join(str(err.get("msg", "")) for err in exc.errors())
        raise ConfigurationError(f"Invalid configuration: {details}") from exc


@lru_cache
def get_settings(env_file: Optional[str] = None) -> Settings:
    return load_settings(env_file)
