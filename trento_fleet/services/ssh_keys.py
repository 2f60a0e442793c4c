from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from trento_fleet.config import DEFAULT_KEY_NAME, ConfigurationError, Settings
from trento_fleet.logger import get_logger
from trento_fleet.schemas.machines import HostRecord
from trento_fleet.services.commands import CommandError, CommandResult, run_command, trim
from trento_fleet.services.machines import read_machines

_logger = get_logger("services.ssh_keys")

CommandRunner = Callable[[Sequence[str]], CommandResult]


@dataclass(frozen=True)
class KeyPair:
    private_pem: str
    public_openssh: str


@dataclass(frozen=True)
class KeySetupResult:
    private_key_path: Path
    public_key_path: Path
    cleared_host_keys: int
    generated: bool


def _public_key_blob(public_openssh: str) -> str:
    parts = public_openssh.split()
    if len(parts) < 2:
        raise ConfigurationError("PUBLIC_SSH_KEY_CONTENT is not an OpenSSH public key.")
    return f"{parts[0]} {parts[1]}"


def _load_private_key(private_pem: str):
    data = private_pem.strip().encode("utf-8") + b"\n"
    try:
        return serialization.load_ssh_private_key(data, password=None)
    except ValueError:
        pass
    try:
        return serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"PRIVATE_SSH_KEY_CONTENT could not be parsed: {exc}") from exc


def public_key_for(private_pem: str) -> str:
    private_key = _load_private_key(private_pem)
    return (
        private_key.public_key()
        .public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
        .decode("utf-8")
    )


def validate_key_pair(pair: KeyPair) -> None:
    derived = public_key_for(pair.private_pem)
    if _public_key_blob(derived) != _public_key_blob(pair.public_openssh):
        raise ConfigurationError("PUBLIC_SSH_KEY_CONTENT does not match PRIVATE_SSH_KEY_CONTENT.")


def generate_key_pair(comment: str = "trento-fleet") -> KeyPair:
    key = ed25519.Ed25519PrivateKey.generate()
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_openssh = (
        key.public_key()
        .public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
        .decode("utf-8")
    )
    if comment:
        public_openssh = f"{public_openssh} {comment}"
    return KeyPair(private_pem=private_pem, public_openssh=public_openssh)


def key_pair_from_settings(settings: Settings) -> KeyPair:
    settings.require("private_ssh_key_content", "public_ssh_key_content")
    pair = KeyPair(
        private_pem=settings.private_ssh_key_content,
        public_openssh=settings.public_ssh_key_content.strip(),
    )
    validate_key_pair(pair)
    return pair


def clear_known_hosts(
    records: Iterable[HostRecord],
    *,
    region: str,
    known_hosts: Path,
    runner: CommandRunner = run_command,
) -> int:
    """Remove stale host keys for every machine in the table; returns how many were cleared."""
    if not known_hosts.is_file():
        return 0
    cleared = 0
    for record in records:
        fqdn = record.fqdn(region)
        try:
            result = runner(["ssh-keygen", "-R", fqdn, "-f", str(known_hosts)])
        except CommandError as exc:
            _logger.warning("ssh_keys.known_hosts", "Could not run ssh-keygen", host=fqdn, error=str(exc))
            break
        if result.ok:
            cleared += 1
        else:
            _logger.debug("ssh_keys.known_hosts", "ssh-keygen -R failed", host=fqdn, stderr=trim(result.stderr))
    return cleared


def write_key_pair(
    pair: KeyPair,
    keys_dir: Path,
    *,
    private_key_path: Optional[Path] = None,
    public_key_path: Optional[Path] = None,
) -> tuple[Path, Path]:
    """Recreate ``keys_dir`` and write the key-pair.

    The pair lands in ``keys_dir`` unless explicit paths are given; those may
    sit outside it and only the two key files are replaced there.
    """
    if keys_dir.is_dir():
        shutil.rmtree(keys_dir)
    keys_dir.mkdir(parents=True, exist_ok=True)

    private_key_path = private_key_path or keys_dir / DEFAULT_KEY_NAME
    public_key_path = public_key_path or private_key_path.with_name(private_key_path.name + ".pub")
    private_key_path.parent.mkdir(parents=True, exist_ok=True)
    public_key_path.parent.mkdir(parents=True, exist_ok=True)
    private_key_path.write_text(pair.private_pem.strip() + "\n")
    private_key_path.chmod(0o600)
    public_key_path.write_text(pair.public_openssh.strip() + "\n")
    public_key_path.chmod(0o644)
    return private_key_path, public_key_path


def setup_ssh_keys(
    settings: Settings,
    *,
    generate: bool = False,
    runner: CommandRunner = run_command,
) -> KeySetupResult:
    with _logger.operation(
        "ssh_keys.setup",
        "Setting up SSH keys",
        keys_dir=str(settings.keys_dir),
        generate=generate,
    ) as op:
        pair = generate_key_pair() if generate else key_pair_from_settings(settings)

        machines_path = Path(settings.machines_file)
        known_hosts = Path(settings.known_hosts_file).expanduser()
        cleared = 0
        if machines_path.is_file():
            cleared = clear_known_hosts(
                read_machines(machines_path, skip_invalid=True),
                region=settings.region,
                known_hosts=known_hosts,
                runner=runner,
            )
            op.step("known_hosts", "Cleared old host keys", cleared=cleared, known_hosts=str(known_hosts))
        else:
            op.step(
                "known_hosts",
                "Machines configuration not found, skipping known_hosts cleanup",
                path=str(machines_path),
                level=logging.WARNING,
            )

        private_key_path, public_key_path = write_key_pair(
            pair,
            settings.keys_dir,
            private_key_path=settings.private_key_path,
            public_key_path=settings.public_key_path,
        )
        op.step(
            "write",
            "Wrote SSH key-pair",
            private_key=str(private_key_path),
            public_key=str(public_key_path),
        )

    return KeySetupResult(
        private_key_path=private_key_path,
        public_key_path=public_key_path,
        cleared_host_keys=cleared,
        generated=generate,
    )
