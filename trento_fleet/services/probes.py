from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from trento_fleet.config import ConfigurationError
from trento_fleet.schemas.probes import EndpointProbe, ProbeSet, Transport

WANDA_PORT = 4001

_WEB_PROBES = (
    EndpointProbe(name="Trento Web /readyz", path="/api/readyz"),
    EndpointProbe(name="Trento Web /healthz", path="/api/healthz"),
)

VARIANTS: dict[str, ProbeSet] = {
    "direct": ProbeSet(
        probes=[
            *_WEB_PROBES,
            EndpointProbe(name="Trento Wanda /readyz", path="/wanda/api/readyz"),
            EndpointProbe(name="Trento Wanda /healthz", path="/wanda/api/healthz"),
        ]
    ),
    "tunneled": ProbeSet(
        probes=[
            *_WEB_PROBES,
            EndpointProbe(
                name="Trento Wanda /readyz",
                path="/api/readyz",
                transport=Transport.TUNNELED,
                port=WANDA_PORT,
            ),
            EndpointProbe(
                name="Trento Wanda /healthz",
                path="/api/healthz",
                transport=Transport.TUNNELED,
                port=WANDA_PORT,
            ),
        ]
    ),
}


def variant_probes(name: str) -> ProbeSet:
    try:
        return VARIANTS[name]
    except KeyError as exc:
        known = ", ".join(sorted(VARIANTS))
        raise ConfigurationError(f"Unknown probe variant '{name}'. Expected one of: {known}") from exc


def parse_probe_mapping(raw: Any, *, source: str = "<probes>") -> ProbeSet:
    if isinstance(raw, list):
        raw = {"probes": raw}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{source}: expected a mapping with a 'probes' list")
    try:
        return ProbeSet.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"{source}: invalid probe definition: {exc}") from exc


def load_probe_mapping(path: str | Path) -> ProbeSet:
    """Load an explicit probe-to-transport mapping from a YAML file."""
    mapping_path = Path(path)
    if not mapping_path.is_file():
        raise ConfigurationError(f"Probe mapping file not found at {mapping_path}")
    try:
        raw = yaml.safe_load(mapping_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{mapping_path}: {exc}") from exc
    return parse_probe_mapping(raw, source=str(mapping_path))
