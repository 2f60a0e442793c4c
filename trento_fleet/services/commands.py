from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, TextIO

from trento_fleet.logger import get_logger

_logger = get_logger("services.commands")


class CommandError(RuntimeError):
    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail


class CommandUnavailableError(CommandError):
    pass


class CommandTimeoutError(CommandError):
    pass


@dataclass(frozen=True)
class CommandResult:
    code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.code == 0


def trim(value: str, max_len: int = 240) -> str:
    text = value.strip()
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def run_command(
    args: Sequence[str],
    *,
    timeout_seconds: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
) -> CommandResult:
    cmd = list(args)
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            env=dict(env) if env is not None else None,
            check=False,
        )
    except FileNotFoundError as exc:
        raise CommandUnavailableError(cmd[0], str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(cmd[0], f"timed out after {timeout_seconds}s") from exc
    _logger.debug("command.run", "Ran command", command=cmd[0], exit_code=proc.returncode)
    return CommandResult(
        code=proc.returncode,
        stdout=(proc.stdout or "").strip(),
        stderr=(proc.stderr or "").strip(),
    )


def run_streamed(
    args: Sequence[str],
    *,
    output: TextIO,
    env: Optional[Mapping[str, str]] = None,
) -> int:
    """Run a long command with stdout and stderr appended to ``output``."""
    cmd = list(args)
    output.flush()
    try:
        proc = subprocess.run(
            cmd,
            stdout=output,
            stderr=subprocess.STDOUT,
            env=dict(env) if env is not None else None,
            check=False,
        )
    except FileNotFoundError as exc:
        raise CommandUnavailableError(cmd[0], str(exc)) from exc
    _logger.debug("command.run", "Ran command", command=cmd[0], exit_code=proc.returncode)
    return proc.returncode
