from __future__ import annotations

import io
import re
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence, TextIO

from trento_fleet.config import ConfigurationError, Settings
from trento_fleet.logger import get_logger
from trento_fleet.schemas.machines import HostRecord
from trento_fleet.schemas.probes import EndpointProbe, ProbeSet
from trento_fleet.services.retry import BackoffPolicy, RetryPhase, RetryState, advance
from trento_fleet.services.transport import (
    NO_CONNECTION,
    ProbeExecutor,
    ProbeResponse,
    TransportOptions,
    execute_probe,
    probe_url,
    require_tunnel_options,
)

_logger = get_logger("services.readiness")
_NUMERIC_RE = re.compile(r"^[0-9]+$")
_RULE = "-" * 70

REASON_OK = "ok"
REASON_INVALID = "invalid_response"
REASON_CONNECTION = "connection_failed"
REASON_HTTP = "http_status"

Sleeper = Callable[[float], None]


@dataclass(frozen=True)
class CheckerConfig:
    region: str = "westeurope"
    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    transport: TransportOptions = field(default_factory=TransportOptions)
    workers: int = 1

    @classmethod
    def from_settings(cls, settings: Settings, *, workers: Optional[int] = None) -> "CheckerConfig":
        return cls(
            region=settings.region,
            policy=BackoffPolicy(
                max_retries=settings.readiness_max_retries,
                initial_wait=settings.readiness_initial_wait,
                multiplier=settings.readiness_backoff_multiplier,
            ),
            transport=TransportOptions(
                connect_timeout=settings.readiness_connect_timeout,
                max_time=settings.readiness_max_time,
                ssh_username=settings.ssh_username,
                ssh_private_key_path=str(settings.private_key_path),
                ssh_connect_timeout=settings.ssh_connect_timeout,
            ),
            workers=workers if workers is not None else settings.readiness_workers,
        )


@dataclass(frozen=True)
class CheckResult:
    host: str
    probe: EndpointProbe
    ok: bool
    status_code: int
    attempts: int
    body: str = ""
    reason: str = REASON_OK


@dataclass(frozen=True)
class HostReport:
    host: str
    results: list[CheckResult]

    @property
    def failed(self) -> bool:
        return any(not result.ok for result in self.results)

    @property
    def failed_checks(self) -> int:
        return sum(1 for result in self.results if not result.ok)


@dataclass
class ReadinessSummary:
    hosts_checked: int = 0
    total_checks: int = 0
    failed_checks: int = 0
    failed_hosts: list[str] = field(default_factory=list)
    reports: list[HostReport] = field(default_factory=list)

    @property
    def passed_checks(self) -> int:
        return self.total_checks - self.failed_checks

    @property
    def ok(self) -> bool:
        return self.failed_checks == 0

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def add(self, report: HostReport) -> None:
        self.reports.append(report)
        self.hosts_checked += 1
        self.total_checks += len(report.results)
        self.failed_checks += report.failed_checks
        if report.failed:
            self.failed_hosts.append(report.host)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "hosts_checked": self.hosts_checked,
            "total_checks": self.total_checks,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "failed_hosts": list(self.failed_hosts),
            "hosts": [
                {
                    "host": report.host,
                    "failed": report.failed,
                    "checks": [
                        {
                            "name": result.probe.name,
                            "path": result.probe.path,
                            "transport": result.probe.transport.value,
                            "ok": result.ok,
                            "status_code": result.status_code,
                            "attempts": result.attempts,
                            "reason": result.reason,
                        }
                        for result in report.results
                    ],
                }
                for report in self.reports
            ],
        }


class ConsoleReporter:
    """Line-by-line progress for people watching the check run."""

    def __init__(self, stream: Optional[TextIO] = None, *, max_retries: int = 5) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._max_retries = max_retries
        self._lock = threading.Lock()

    def write(self, line: str = "") -> None:
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()

    def fleet_start(self, hosts: int) -> None:
        self.write()
        self.write(f"Starting readiness checks for {hosts} host(s)...")
        self.write()

    def host_start(self, host: str) -> None:
        self.write(_RULE)
        self.write(f"Host: {host}")
        self.write(_RULE)

    def host_end(self) -> None:
        self.write()

    def probe_start(self, probe: EndpointProbe, url: str) -> None:
        via = " (via ssh)" if probe.tunneled else ""
        self.write(f"  Checking {probe.name}: {url}{via}")

    def probe_retry(self, probe: EndpointProbe, response: ProbeResponse, reason: str, attempt: int, delay: float) -> None:
        progress = f"attempt {attempt}/{self._max_retries}"
        if reason == REASON_HTTP:
            detail = f"[HTTP {response.status}] - Service not ready"
        elif reason == REASON_CONNECTION:
            detail = "- Connection failed"
        else:
            detail = "- Invalid response"
        self.write(f"    {probe.name} {detail} ({progress}), retrying in {delay:g}s...")

    def probe_success(self, probe: EndpointProbe, result: CheckResult) -> None:
        line = f"    OK {probe.name} [HTTP {result.status_code}]: {result.body}"
        if result.attempts > 1:
            line += f" (succeeded after {result.attempts} attempts)"
        self.write(line)

    def probe_failure(self, probe: EndpointProbe, result: CheckResult) -> None:
        if result.reason == REASON_HTTP:
            self.write(
                f"    FAIL {probe.name} [HTTP {result.status_code}]: {result.body} "
                f"(failed after {result.attempts} attempts)"
            )
        else:
            self.write(f"    FAIL {probe.name} - Connection failed after {result.attempts} attempts")

    def summary(self, summary: ReadinessSummary) -> None:
        self.write(_RULE)
        self.write("Readiness Check Summary")
        self.write(_RULE)
        self.write(f"Total hosts checked: {summary.hosts_checked}")
        self.write(f"Total checks performed: {summary.total_checks}")
        self.write(f"Passed checks: {summary.passed_checks}")
        self.write(f"Failed checks: {summary.failed_checks}")
        self.write()
        if summary.ok:
            self.write("All hosts are ready!")
            return
        self.write("The following hosts have readiness check failures:")
        for host in summary.failed_hosts:
            self.write(f"  - {host}")


def classify(probe: EndpointProbe, response: ProbeResponse) -> tuple[bool, int, str]:
    status = response.status.strip()
    if not _NUMERIC_RE.match(status):
        return False, 0, REASON_INVALID
    if status == NO_CONNECTION or int(status) == 0:
        return False, 0, REASON_CONNECTION
    code = int(status)
    if len(status) == 3 and probe.accepts(code):
        return True, code, REASON_OK
    return False, code, REASON_HTTP


def check_endpoint(
    host: str,
    probe: EndpointProbe,
    config: CheckerConfig,
    *,
    execute: ProbeExecutor = execute_probe,
    sleep: Sleeper = time.sleep,
    reporter: Optional[ConsoleReporter] = None,
) -> CheckResult:
    """Probe one endpoint until it answers in the expected status class or retries run out."""
    out = reporter or ConsoleReporter(io.StringIO(), max_retries=config.policy.max_retries)
    out.probe_start(probe, probe_url(host, probe))

    state = RetryState()
    while True:
        response = execute(host, probe, config.transport)
        ok, status_code, reason = classify(probe, response)
        state = advance(config.policy, state, ok)

        if state.phase is RetryPhase.PENDING:
            out.probe_retry(probe, response, reason, state.attempts, state.next_delay)
            _logger.debug(
                "readiness.retry",
                "Probe not ready",
                probe=probe.name,
                status=response.status,
                attempt=state.attempts,
                delay=state.next_delay,
            )
            sleep(state.next_delay)
            continue

        result = CheckResult(
            host=host,
            probe=probe,
            ok=ok,
            status_code=status_code,
            attempts=state.attempts,
            body=response.body,
            reason=reason,
        )
        if state.phase is RetryPhase.SUCCESS:
            out.probe_success(probe, result)
        else:
            out.probe_failure(probe, result)
            _logger.warning(
                "readiness.failed",
                "Probe failed after all attempts",
                host=host,
                probe=probe.name,
                status_code=status_code,
                reason=reason,
                attempts=state.attempts,
            )
        return result


def check_host(
    host: str,
    probes: Sequence[EndpointProbe],
    config: CheckerConfig,
    *,
    execute: ProbeExecutor = execute_probe,
    sleep: Sleeper = time.sleep,
    reporter: Optional[ConsoleReporter] = None,
) -> HostReport:
    out = reporter or ConsoleReporter(io.StringIO(), max_retries=config.policy.max_retries)
    out.host_start(host)
    with _logger.context(host=host):
        results = [
            check_endpoint(host, probe, config, execute=execute, sleep=sleep, reporter=out)
            for probe in probes
        ]
    report = HostReport(host=host, results=results)
    out.host_end()
    return report


def _probe_list(probes: ProbeSet | Iterable[EndpointProbe]) -> list[EndpointProbe]:
    if isinstance(probes, ProbeSet):
        return list(probes.probes)
    return list(probes)


def validate_checker_inputs(
    fleet: Sequence[HostRecord],
    probes: Sequence[EndpointProbe],
    config: CheckerConfig,
) -> None:
    if not fleet:
        raise ConfigurationError("No hosts to check: the active fleet is empty.")
    if not probes:
        raise ConfigurationError("No readiness probes configured.")
    if config.workers < 1:
        raise ConfigurationError("workers must be at least 1.")
    if any(probe.tunneled for probe in probes):
        missing = require_tunnel_options(config.transport)
        if missing:
            raise ConfigurationError(missing)
        key_path = Path(config.transport.ssh_private_key_path)
        if not key_path.is_file():
            raise ConfigurationError(f"SSH private key not found at {key_path}")


def check_fleet(
    fleet: Sequence[HostRecord],
    probes: ProbeSet | Iterable[EndpointProbe],
    config: CheckerConfig,
    *,
    execute: ProbeExecutor = execute_probe,
    sleep: Sleeper = time.sleep,
    reporter: Optional[ConsoleReporter] = None,
) -> ReadinessSummary:
    """Check every host against every probe; failures are collected, never raised."""
    probe_list = _probe_list(probes)
    validate_checker_inputs(fleet, probe_list, config)

    out = reporter or ConsoleReporter(max_retries=config.policy.max_retries)
    hosts = [record.fqdn(config.region) for record in fleet]
    summary = ReadinessSummary()

    with _logger.operation(
        "readiness.fleet",
        "Checking fleet readiness",
        hosts=len(hosts),
        probes=len(probe_list),
        workers=config.workers,
    ) as op:
        out.fleet_start(len(hosts))
        if config.workers == 1 or len(hosts) == 1:
            for host in hosts:
                summary.add(check_host(host, probe_list, config, execute=execute, sleep=sleep, reporter=out))
        else:
            _check_concurrently(hosts, probe_list, config, execute, sleep, out, summary)
        op.step(
            "summary",
            "Fleet readiness evaluated",
            total_checks=summary.total_checks,
            failed_checks=summary.failed_checks,
            failed_hosts=len(summary.failed_hosts),
        )
    out.summary(summary)
    return summary


def _check_concurrently(
    hosts: list[str],
    probes: list[EndpointProbe],
    config: CheckerConfig,
    execute: ProbeExecutor,
    sleep: Sleeper,
    out: ConsoleReporter,
    summary: ReadinessSummary,
) -> None:
    # each host writes to its own buffer; only this thread touches the summary
    buffers = [io.StringIO() for _ in hosts]
    max_workers = min(config.workers, len(hosts))
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="readiness") as pool:
        futures = [
            pool.submit(
                check_host,
                host,
                probes,
                config,
                execute=execute,
                sleep=sleep,
                reporter=ConsoleReporter(buffer, max_retries=config.policy.max_retries),
            )
            for host, buffer in zip(hosts, buffers)
        ]
        for future, buffer in zip(futures, buffers):
            report = future.result()
            for line in buffer.getvalue().splitlines():
                out.write(line)
            summary.add(report)
