from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence, TextIO

from trento_fleet.config import ConfigurationError, Settings
from trento_fleet.logger import get_logger
from trento_fleet.services.commands import CommandError, CommandResult, run_command, run_streamed, trim

_logger = get_logger("services.terraform")

STATE_KEY = "terraform.tfstate"
APPLY_LOG = "tf-apply.log"
DESTROY_LOG = "tf-destroy.log"

CommandRunner = Callable[[Sequence[str]], CommandResult]
StreamRunner = Callable[..., int]


class TerraformError(CommandError):
    def __init__(self, action: str, detail: str, exit_code: int) -> None:
        super().__init__(action, detail)
        self.exit_code = exit_code


@dataclass(frozen=True)
class TerraformRun:
    action: str
    log_path: Path
    exit_code: int


def azure_subscription_id(runner: CommandRunner = run_command) -> str:
    result = runner(["az", "account", "show", "--query", "id", "-o", "tsv"])
    subscription_id = result.stdout.strip()
    if not result.ok or not subscription_id:
        raise CommandError(
            "az account show",
            "Could not retrieve subscription ID from Azure CLI"
            + (f": {trim(result.stderr)}" if result.stderr else ""),
        )
    return subscription_id


def backend_config_args(settings: Settings, subscription_id: str) -> list[str]:
    values = {
        "storage_account_name": settings.azure_blob_storage,
        "container_name": settings.azure_blob_storage_tf_state_container,
        "key": STATE_KEY,
        "resource_group_name": settings.azure_resource_group,
        "subscription_id": subscription_id,
    }
    return [f"-backend-config={key}={value}" for key, value in values.items()]


def terraform_env(
    settings: Settings,
    subscription_id: str,
    *,
    base_env: Optional[Mapping[str, str]] = None,
    include_private_key: bool = True,
) -> dict[str, str]:
    env = dict(os.environ if base_env is None else base_env)
    env["ARM_SUBSCRIPTION_ID"] = subscription_id
    env["TF_VAR_ssh_public_key_content"] = settings.public_ssh_key_content
    env["TF_VAR_azure_resource_group"] = settings.azure_resource_group
    env["TF_VAR_azure_owner_tag"] = settings.azure_owner_tag
    if include_private_key:
        env["SSH_PRIVATE_KEY_PATH"] = str(settings.private_key_path)
        env["TF_VAR_ssh_private_key_path"] = str(settings.private_key_path)
    return env


def _chdir_arg(settings: Settings) -> str:
    return f"-chdir={settings.terraform_dir}"


def _open_log(settings: Settings, name: str) -> tuple[Path, TextIO]:
    logs_dir = Path(settings.logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / name
    handle = log_path.open("w", encoding="utf-8")
    handle.write(f"--- {datetime.now(timezone.utc).isoformat()} ---\n")
    return log_path, handle


def _note(log: TextIO, line: str) -> None:
    log.write(line + "\n")
    log.flush()


def _require_keys(settings: Settings) -> None:
    missing = [path for path in (settings.private_key_path, settings.public_key_path) if not path.is_file()]
    if missing:
        raise ConfigurationError(
            f"SSH keys not found in {settings.private_key_path.parent}. Run: trento-fleet setup-ssh-keys"
        )


def apply(
    settings: Settings,
    extra_args: Sequence[str] = (),
    *,
    init_args: Sequence[str] = (),
    runner: CommandRunner = run_command,
    streamer: StreamRunner = run_streamed,
    base_env: Optional[Mapping[str, str]] = None,
) -> TerraformRun:
    """Run ``terraform init`` and ``terraform apply -auto-approve`` with the Azure backend."""
    _require_keys(settings)
    settings.require(
        "public_ssh_key_content",
        "azure_resource_group",
        "azure_owner_tag",
        "azure_blob_storage",
    )

    log_path, log = _open_log(settings, APPLY_LOG)
    with log, _logger.operation(
        "terraform.apply",
        "Running Terraform apply",
        terraform_dir=settings.terraform_dir,
        log=str(log_path),
    ) as op:
        _note(log, "Exporting Terraform variables...")
        try:
            subscription_id = azure_subscription_id(runner)
        except CommandError as exc:
            _note(log, f"ERROR: {exc}")
            raise
        _note(log, f"ARM_SUBSCRIPTION_ID set to: {subscription_id}")
        _note(
            log,
            f"You can SSH with: ssh -i {settings.private_key_path} {settings.ssh_username}@<vm-fqdn>",
        )
        env = terraform_env(settings, subscription_id, base_env=base_env)
        backend = backend_config_args(settings, subscription_id)
        _note(
            log,
            f"Backend config: storage_account={settings.azure_blob_storage}, "
            f"container={settings.azure_blob_storage_tf_state_container}, "
            f"resource_group={settings.azure_resource_group}",
        )

        code = streamer(["terraform", _chdir_arg(settings), "init", *backend, *init_args], output=log, env=env)
        op.step("init", "Terraform init finished", exit_code=code)
        if code == 0:
            code = streamer(
                ["terraform", _chdir_arg(settings), "apply", "-auto-approve", *extra_args],
                output=log,
                env=env,
            )
            op.step("apply", "Terraform apply finished", exit_code=code)
        if code != 0:
            raise TerraformError("terraform apply", f"failed, check {log_path} for details", code)
    return TerraformRun(action="apply", log_path=log_path, exit_code=0)


def countdown(seconds: int, *, stream: TextIO = sys.stderr, sleep: Callable[[float], None] = time.sleep) -> None:
    for remaining in range(seconds, 0, -1):
        stream.write(f"\r   Proceeding in {remaining:2d} seconds... ")
        stream.flush()
        sleep(1)
    stream.write("\r   Proceeding now...            \n")
    stream.flush()


def destroy(
    settings: Settings,
    *,
    confirm_seconds: int = 10,
    stream: TextIO = sys.stderr,
    sleep: Callable[[float], None] = time.sleep,
    runner: CommandRunner = run_command,
    streamer: StreamRunner = run_streamed,
    base_env: Optional[Mapping[str, str]] = None,
) -> TerraformRun:
    """Destroy every Terraform-managed resource after a cancellable countdown."""
    settings.require(
        "public_ssh_key_content",
        "azure_resource_group",
        "azure_owner_tag",
        "azure_blob_storage",
    )

    log_path, log = _open_log(settings, DESTROY_LOG)
    with log, _logger.operation(
        "terraform.destroy",
        "Running Terraform destroy",
        terraform_dir=settings.terraform_dir,
        log=str(log_path),
    ) as op:
        try:
            subscription_id = azure_subscription_id(runner)
        except CommandError as exc:
            _note(log, f"ERROR: {exc}")
            raise
        _note(log, f"ARM_SUBSCRIPTION_ID set to: {subscription_id}")
        env = terraform_env(settings, subscription_id, base_env=base_env, include_private_key=False)
        backend = backend_config_args(settings, subscription_id)

        if confirm_seconds > 0:
            stream.write("\nWARNING: This will DESTROY all Terraform-managed infrastructure!\n")
            stream.write(f"   Resource group: {settings.azure_resource_group}\n")
            stream.write(
                f"   State backend: {settings.azure_blob_storage}/"
                f"{settings.azure_blob_storage_tf_state_container}\n\n"
            )
            stream.write(f"Press Ctrl+C within {confirm_seconds} seconds to cancel...\n")
            countdown(confirm_seconds, stream=stream, sleep=sleep)

        code = streamer(["terraform", _chdir_arg(settings), "init", *backend], output=log, env=env)
        op.step("init", "Terraform init finished", exit_code=code)
        if code != 0:
            raise TerraformError("terraform init", f"failed, check {log_path} for details", code)

        code = streamer(
            ["terraform", _chdir_arg(settings), "destroy", "-auto-approve"],
            output=log,
            env=env,
        )
        op.step("destroy", "Terraform destroy finished", exit_code=code)
        if code != 0:
            raise TerraformError("terraform destroy", f"failed, check {log_path} for details", code)
    return TerraformRun(action="destroy", log_path=log_path, exit_code=0)
