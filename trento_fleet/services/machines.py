from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from trento_fleet.config import ConfigurationError
from trento_fleet.logger import get_logger
from trento_fleet.schemas.machines import HostRecord

_logger = get_logger("services.machines")
_HEADER = ("prefix", "slesVersion", "spVersion", "suffix")


def _is_blank(row: list[str]) -> bool:
    return not any(cell.replace("\r", "").strip() for cell in row)


def parse_machines(
    lines: Iterable[str],
    *,
    source: str = "<machines>",
    skip_invalid: bool = False,
) -> list[HostRecord]:
    """Parse every host row of the machines table, header and blank lines skipped.

    Invalid rows raise ConfigurationError, or are logged and dropped with ``skip_invalid``.
    """
    records: list[HostRecord] = []
    for line_no, row in enumerate(csv.reader(lines), start=1):
        if not row or _is_blank(row):
            continue
        if row[0].strip() == _HEADER[0]:
            continue
        cells = [cell.replace("\r", "").strip() for cell in row] + [""] * len(_HEADER)
        try:
            record = HostRecord(
                prefix=cells[0],
                sles_version=cells[1],
                sp_version=cells[2],
                suffix=cells[3],
            )
        except ValidationError as exc:
            if skip_invalid:
                _logger.warning(
                    "machines.skip_invalid",
                    "Skipped invalid machine row",
                    source=source,
                    line=line_no,
                    row=",".join(row),
                )
                continue
            raise ConfigurationError(f"{source}:{line_no}: invalid machine row {row!r}") from exc
        records.append(record)
    return records


def read_machines(path: str | Path, *, skip_invalid: bool = False) -> list[HostRecord]:
    machines_path = Path(path)
    if not machines_path.is_file():
        raise ConfigurationError(f"Machines configuration file not found at {machines_path}")
    with machines_path.open(newline="", encoding="utf-8") as handle:
        return parse_machines(handle, source=str(machines_path), skip_invalid=skip_invalid)


def active_fleet(records: Iterable[HostRecord]) -> list[HostRecord]:
    fleet: list[HostRecord] = []
    for record in records:
        if record.is_active:
            fleet.append(record)
        else:
            _logger.debug(
                "machines.skip",
                "Skipped inactive host",
                vm_name=record.vm_name,
                suffix=record.suffix,
                sles_version=record.sles_version,
            )
    return fleet


def load_fleet(path: str | Path) -> list[HostRecord]:
    records = read_machines(path)
    fleet = active_fleet(records)
    _logger.info("machines.load", "Loaded VM definitions", path=str(path), rows=len(records), active=len(fleet))
    if not fleet:
        raise ConfigurationError(f"No valid VMs found in {path}")
    return fleet
