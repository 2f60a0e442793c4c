from __future__ import annotations

import http.client
import shlex
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional

from trento_fleet.logger import get_logger
from trento_fleet.schemas.probes import EndpointProbe, Transport
from trento_fleet.services.commands import CommandError, run_command, trim

_logger = get_logger("services.transport")

NO_CONNECTION = "000"
_SSH_FAILURE_CODE = 255
_CURL_WRITE_OUT = r"\n%{http_code}"


@dataclass(frozen=True)
class ProbeResponse:
    status: str
    body: str = ""


@dataclass(frozen=True)
class TransportOptions:
    connect_timeout: float = 5.0
    max_time: float = 10.0
    ssh_username: str = ""
    ssh_private_key_path: str = ""
    ssh_connect_timeout: int = 10


ProbeExecutor = Callable[[str, EndpointProbe, TransportOptions], ProbeResponse]


def probe_url(fqdn: str, probe: EndpointProbe) -> str:
    if probe.tunneled:
        return f"http://localhost:{probe.port}{probe.path}"
    return f"https://{fqdn}{probe.path}"


def split_status_output(output: str) -> ProbeResponse:
    """Split ``body\\nstatus`` as printed by ``curl -w '\\n%{http_code}'``."""
    text = output.rstrip("\r\n")
    if not text:
        return ProbeResponse(status=NO_CONNECTION)
    body, _, status = text.rpartition("\n")
    return ProbeResponse(status=status.strip(), body=body.strip())


def _insecure_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def _read_body(response) -> str:
    try:
        return response.read().decode("utf-8", errors="replace").strip()
    except (OSError, http.client.HTTPException):
        return ""


def direct_request(fqdn: str, probe: EndpointProbe, options: TransportOptions) -> ProbeResponse:
    url = probe_url(fqdn, probe)
    request = urllib.request.Request(url=url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=options.max_time, context=_insecure_context()) as resp:
            status = int(getattr(resp, "status", 0) or 0)
            body = resp.read().decode("utf-8", errors="replace").strip()
            return ProbeResponse(status=f"{status:03d}", body=body)
    except urllib.error.HTTPError as exc:
        status = int(getattr(exc, "code", 0) or 0)
        return ProbeResponse(status=f"{status:03d}", body=_read_body(exc))
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
        _logger.debug(
            "transport.direct",
            "Direct request failed",
            url=url,
            error=f"{type(exc).__name__}: {trim(str(exc))}",
        )
        return ProbeResponse(status=NO_CONNECTION)


def ssh_command(fqdn: str, remote_command: str, options: TransportOptions) -> list[str]:
    return [
        "ssh",
        "-i",
        options.ssh_private_key_path,
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-o",
        "BatchMode=yes",
        "-o",
        "LogLevel=ERROR",
        "-o",
        f"ConnectTimeout={options.ssh_connect_timeout}",
        f"{options.ssh_username}@{fqdn}",
        remote_command,
    ]


def remote_curl_command(probe: EndpointProbe, options: TransportOptions) -> str:
    return shlex.join(
        [
            "curl",
            "-s",
            "-S",
            "-w",
            _CURL_WRITE_OUT,
            "--max-time",
            f"{options.max_time:g}",
            "--connect-timeout",
            f"{options.connect_timeout:g}",
            probe_url("localhost", probe),
        ]
    )


def tunneled_request(fqdn: str, probe: EndpointProbe, options: TransportOptions) -> ProbeResponse:
    cmd = ssh_command(fqdn, remote_curl_command(probe, options), options)
    timeout = options.ssh_connect_timeout + options.max_time + 5
    try:
        result = run_command(cmd, timeout_seconds=timeout)
    except CommandError as exc:
        _logger.debug("transport.tunnel", "Tunnel could not be started", host=fqdn, error=str(exc))
        return ProbeResponse(status=NO_CONNECTION)

    if result.code == _SSH_FAILURE_CODE:
        _logger.debug(
            "transport.tunnel",
            "SSH session failed",
            host=fqdn,
            stderr=trim(result.stderr),
        )
        return ProbeResponse(status=NO_CONNECTION)
    return split_status_output(result.stdout)


def execute_probe(
    fqdn: str,
    probe: EndpointProbe,
    options: TransportOptions,
) -> ProbeResponse:
    if probe.transport is Transport.TUNNELED:
        return tunneled_request(fqdn, probe, options)
    return direct_request(fqdn, probe, options)


def require_tunnel_options(options: TransportOptions) -> Optional[str]:
    """Return a description of what is missing for tunneled probes, if anything."""
    missing: list[str] = []
    if not options.ssh_username:
        missing.append("SSH_USERNAME")
    if not options.ssh_private_key_path:
        missing.append("SSH_PRIVATE_KEY_PATH")
    if missing:
        return f"{', '.join(missing)} must be set for tunneled probes."
    return None
