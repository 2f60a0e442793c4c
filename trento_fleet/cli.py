from __future__ import annotations

import argparse
import io
import json
import sys
from dataclasses import replace
from typing import Any, Dict

from trento_fleet.config import Settings, get_settings
from trento_fleet.logger import configure_logging
from trento_fleet.services import ssh_keys, terraform
from trento_fleet.services.machines import active_fleet, load_fleet, read_machines
from trento_fleet.services.probes import VARIANTS, load_probe_mapping, variant_probes
from trento_fleet.services.readiness import CheckerConfig, ConsoleReporter, check_fleet
from trento_fleet.services.retry import BackoffPolicy
from trento_fleet.services.terraform import TerraformError


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _checker_config(args: argparse.Namespace, settings: Settings) -> CheckerConfig:
    config = CheckerConfig.from_settings(settings, workers=args.workers)
    policy = config.policy
    if args.max_retries is not None or args.initial_wait is not None:
        policy = BackoffPolicy(
            max_retries=args.max_retries if args.max_retries is not None else policy.max_retries,
            initial_wait=args.initial_wait if args.initial_wait is not None else policy.initial_wait,
            multiplier=policy.multiplier,
        )
    return replace(config, policy=policy)


def cmd_verify(args: argparse.Namespace, settings: Settings) -> int:
    print("Reading VM definitions from CSV...", file=sys.stderr)
    fleet = load_fleet(args.machines or settings.machines_file)
    probes = load_probe_mapping(args.probes) if args.probes else variant_probes(args.variant)
    config = _checker_config(args, settings)

    stream = io.StringIO() if args.json else sys.stdout
    reporter = ConsoleReporter(stream, max_retries=config.policy.max_retries)
    summary = check_fleet(fleet, probes, config, reporter=reporter)
    if args.json:
        _print_json(summary.to_dict())
    return summary.exit_code


def cmd_fleet(args: argparse.Namespace, settings: Settings) -> int:
    records = read_machines(args.machines or settings.machines_file)
    hosts = records if args.all else active_fleet(records)
    for record in hosts:
        print(record.fqdn(settings.region))
    return 0


def cmd_setup_ssh_keys(args: argparse.Namespace, settings: Settings) -> int:
    result = ssh_keys.setup_ssh_keys(settings, generate=args.generate)
    if result.cleared_host_keys:
        print(f"Cleared {result.cleared_host_keys} old host key(s) from known_hosts", file=sys.stderr)
    else:
        print("No old host keys found to clear", file=sys.stderr)
    print("SSH key-pair created successfully", file=sys.stderr)
    print(f"   Private key: {result.private_key_path}", file=sys.stderr)
    print(f"   Public key:  {result.public_key_path}", file=sys.stderr)
    if result.generated:
        print(result.public_key_path.read_text().strip())
    return 0


def cmd_apply(args: argparse.Namespace, settings: Settings) -> int:
    print("Starting Terraform execution...", file=sys.stderr)
    extra = [arg for arg in args.terraform_args if arg != "--"]
    run = terraform.apply(settings, extra, init_args=args.init_arg)
    print(f"Terraform apply completed successfully. Full log: {run.log_path}", file=sys.stderr)
    return run.exit_code


def cmd_destroy(args: argparse.Namespace, settings: Settings) -> int:
    print("Starting Terraform destroy...", file=sys.stderr)
    run = terraform.destroy(settings, confirm_seconds=0 if args.yes else args.countdown)
    print(f"Terraform destroy completed successfully. Full log: {run.log_path}", file=sys.stderr)
    return run.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trento-fleet",
        description="Provision, verify and tear down the Trento Azure VM fleet",
    )
    parser.add_argument("--env-file", help="Environment file (default: .env when present)")
    sub = parser.add_subparsers(dest="command", required=True)

    verify = sub.add_parser("verify", help="Check readiness endpoints on every active host")
    verify.add_argument("--machines", help="Machines table (default: MACHINES_FILE)")
    verify.add_argument("--variant", choices=sorted(VARIANTS), default="direct")
    verify.add_argument("--probes", help="YAML file mapping probes to transports")
    verify.add_argument("--workers", type=int, help="Hosts checked concurrently")
    verify.add_argument("--max-retries", type=int)
    verify.add_argument("--initial-wait", type=float)
    verify.add_argument("--json", action="store_true", help="Print the summary as JSON")
    verify.set_defaults(func=cmd_verify)

    fleet = sub.add_parser("fleet", help="List host FQDNs from the machines table")
    fleet.add_argument("--machines")
    fleet.add_argument("--all", action="store_true", help="Include inactive hosts")
    fleet.set_defaults(func=cmd_fleet)

    keys = sub.add_parser("setup-ssh-keys", help="Write SSH keys and clear stale known_hosts entries")
    keys.add_argument("--generate", action="store_true", help="Generate a new ed25519 key-pair")
    keys.set_defaults(func=cmd_setup_ssh_keys)

    apply = sub.add_parser("apply", help="Run terraform init and apply")
    apply.add_argument("--init-arg", action="append", default=[], help="Extra argument for terraform init")
    apply.add_argument("terraform_args", nargs=argparse.REMAINDER, help="Extra arguments for terraform apply")
    apply.set_defaults(func=cmd_apply)

    destroy = sub.add_parser("destroy", help="Run terraform destroy")
    destroy.add_argument("--countdown", type=int, default=10)
    destroy.add_argument("--yes", action="store_true", help="Skip the countdown")
    destroy.set_defaults(func=cmd_destroy)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = get_settings(args.env_file)
        configure_logging(log_level=settings.log_level, log_file=settings.log_file or None)
        exit_code = args.func(args, settings)
    except TerraformError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(exc.exit_code) from exc
    except KeyboardInterrupt as exc:
        print("\ncancelled", file=sys.stderr)
        raise SystemExit(130) from exc
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
