#!/usr/bin/env python3
"""
Minter CLI

Usage:
    dip721-mint <command> [subcommand] [options]

Commands:
    mint        Mint every entry of a manifest
    status      Show the progress ledger of a manifest
    keygen      Create a new Ed25519 identity (PEM)
    principal   Print the principal of an identity
    config      Configuration management

Exit codes:
    0  every entry succeeded (or was already recorded)
    1  the command failed before or during the run
    2  bad invocation
    3  the run finished with failed, pending, or aborted entries

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import pathlib
import signal
import sys
import threading
from enum import Enum
from typing import Any, Callable, List, Optional

import yaml

from minter import __version__
from minter.builder import MintRequestBuilder
from minter.config import get_config_manager
from minter.errors import MinterError
from minter.identity import default_identity_path, generate_identity_pem, load_identity
from minter.ledger import LEDGER_SUFFIX, ProgressLedger, default_ledger_path
from minter.manifest import load_manifest
from minter.observability import MintLayer, configure_logging, get_logger
from minter.orchestrator import BatchOrchestrator, RunOptions, plan_batch
from minter.transport import CallTransport, HttpCallTransport

logger = get_logger("cli", MintLayer.CLI)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_INCOMPLETE = 3


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = EXIT_ERROR):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return _format_table(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [["" if row.get(h) is None else str(row.get(h))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = [" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))]
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


TransportFactory = Callable[[str, float], CallTransport]


def _http_transport(network: str, timeout: float) -> HttpCallTransport:
    return HttpCallTransport(network, timeout=timeout)


class MinterCLI:
    """Main CLI application."""

    def __init__(self, transport_factory: Optional[TransportFactory] = None):
        self._transport_factory = transport_factory or _http_transport
        self._exit_code = EXIT_OK

        self.parser = argparse.ArgumentParser(
            prog="dip721-mint",
            description="Batch-mint DIP-721 NFTs from a manifest",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"dip721-mint {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=[f.value for f in OutputFormat],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration file (default: minter.yaml search path)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        mint = self.subparsers.add_parser("mint", help="Mint every entry of a manifest")
        mint.add_argument("manifest", help="Manifest file (YAML or JSON)")
        mint.add_argument("--identity", "-i", help="Identity PEM or JWK (default: dfx default identity)")
        mint.add_argument("--canister", help="DIP-721 canister principal")
        mint.add_argument("--network", "-n", help="ic, local, or a gateway URL")
        mint.add_argument("--ledger", help=f"Progress ledger path (default: <manifest>{LEDGER_SUFFIX})")
        mint.add_argument("--concurrency", "-k", type=int, help="Maximum calls in flight")
        mint.add_argument("--max-attempts", type=int, help="Attempts per entry")
        mint.add_argument("--timeout", type=float, help="Per-call timeout in seconds")
        mint.add_argument("--no-resume", action="store_true", help="Refuse to reuse an existing ledger")
        mint.add_argument("--no-preflight", action="store_true", help="Skip the Mint interface check")
        mint.add_argument("--dry-run", action="store_true", help="Validate and sign without sending")
        mint.add_argument("--log-level", choices=["debug", "info", "warning", "error"])

        status = self.subparsers.add_parser("status", help="Show the progress ledger of a manifest")
        status.add_argument("path", help="Manifest or ledger file")

        keygen = self.subparsers.add_parser("keygen", help="Create a new Ed25519 identity")
        keygen.add_argument("output", help="Where to write the PEM file")

        principal = self.subparsers.add_parser("principal", help="Print the principal of an identity")
        principal.add_argument("--identity", "-i", help="Identity PEM or JWK (default: dfx default identity)")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Dotted path, e.g. retry.max_attempts")
        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        try:
            parsed = self.parser.parse_args(args)
        except SystemExit as ex:
            return int(ex.code or 0)

        if not parsed.command:
            self.parser.print_help()
            return EXIT_USAGE

        self._exit_code = EXIT_OK
        try:
            fmt = OutputFormat(parsed.format)
            self._load_config(parsed.config)
            result = self._dispatch(parsed, fmt)
            if result is not None:
                print(format_output(result, fmt))
            return self._exit_code

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except MinterError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR

    def _load_config(self, path: Optional[str]) -> None:
        mgr = get_config_manager()
        if path:
            mgr.load_from_file(path)
        else:
            mgr.load_defaults()

    def _dispatch(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip(), EXIT_USAGE)

        return handler(args, fmt)

    def _resolve_identity(self, explicit: Optional[str]):
        cfg = get_config_manager().config
        path = explicit or cfg.transport.identity.get() or default_identity_path()
        return load_identity(path)

    # Mint
    def _handle_mint(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        cfg = get_config_manager().config
        configure_logging(
            args.log_level or cfg.observability.log_level.get(),
            cfg.observability.log_format.get(),
        )

        manifest = load_manifest(args.manifest)
        signer = self._resolve_identity(args.identity)
        canister_id = args.canister or cfg.transport.canister_id.get() or manifest.canister_id
        if not canister_id:
            raise CLIError("no canister: pass --canister or set canister_id in the manifest", EXIT_USAGE)

        try:
            options = RunOptions.from_config(
                cfg,
                concurrency=args.concurrency,
                max_attempts=args.max_attempts,
                per_call_timeout=args.timeout,
                resume=False if args.no_resume else None,
                preflight=False if args.no_preflight else None,
            )
        except ValueError as ex:
            raise CLIError(str(ex), EXIT_USAGE) from ex

        if args.dry_run:
            builder = MintRequestBuilder(
                canister_id, signer.principal, manifest.manifest_id, base_dir=manifest.base_dir
            )
            planned = [p.to_dict() for p in plan_batch(manifest, signer, builder)]
            if not all(p["ready"] for p in planned):
                self._exit_code = EXIT_INCOMPLETE
            if fmt == OutputFormat.TABLE:
                return planned
            return {
                "dry_run": True,
                "manifest_id": manifest.manifest_id,
                "canister_id": canister_id,
                "principal": signer.principal.to_text(),
                "entries": planned,
            }

        ledger_path = pathlib.Path(args.ledger) if args.ledger else default_ledger_path(manifest.source)
        ledger = ProgressLedger.open(ledger_path, manifest.manifest_id, resume=options.resume)
        network = args.network or cfg.transport.network.get()
        try:
            transport = self._transport_factory(network, options.per_call_timeout)
        except ValueError as ex:
            raise CLIError(str(ex), EXIT_USAGE) from ex

        try:
            orchestrator = BatchOrchestrator(
                manifest, signer, transport, options, ledger=ledger, canister_id=canister_id
            )
            summary = self._run_interruptible(orchestrator)
        finally:
            close = getattr(transport, "close", None)
            if close is not None:
                close()

        if not summary.ok:
            self._exit_code = EXIT_INCOMPLETE
        if fmt == OutputFormat.TABLE:
            return [
                {k: v for k, v in e.to_dict().items() if k != "last_outcome"}
                for e in summary.entries
            ]
        result = summary.to_dict()
        result["ledger"] = str(ledger_path)
        return result

    def _run_interruptible(self, orchestrator: BatchOrchestrator):
        if threading.current_thread() is not threading.main_thread():
            return orchestrator.run()

        def _on_interrupt(signum, frame):
            logger.warning("Interrupted; finishing in-flight calls")
            orchestrator.cancel()

        previous = signal.signal(signal.SIGINT, _on_interrupt)
        try:
            return orchestrator.run()
        finally:
            signal.signal(signal.SIGINT, previous)

    # Status
    def _handle_status(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        path = pathlib.Path(args.path)
        if not path.name.endswith(LEDGER_SUFFIX):
            path = default_ledger_path(path)
        if not path.exists():
            raise CLIError(f"no progress ledger at {path}")
        ledger = ProgressLedger.load(path)
        records = [r.to_dict() for r in ledger.records.values()]
        if fmt == OutputFormat.TABLE:
            return records
        return {
            "ledger": str(path),
            "manifest_id": ledger.manifest_id,
            "succeeded": sum(1 for r in records if r["status"] == "succeeded"),
            "failed": sum(1 for r in records if r["status"] == "failed"),
            "records": records,
        }

    # Identity
    def _handle_keygen(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        signer = generate_identity_pem(args.output)
        return {"path": str(args.output), "principal": signer.principal.to_text()}

    def _handle_principal(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        signer = self._resolve_identity(args.identity)
        return {"principal": signer.principal.to_text()}

    # Config
    def _handle_config_get(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        return {"path": args.path, "value": get_config_manager().get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        errors = get_config_manager().validate()
        if errors:
            self._exit_code = EXIT_ERROR
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace, fmt: OutputFormat) -> Any:
        return get_config_manager().export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    return MinterCLI().run(argv)


if __name__ == "__main__":
    sys.exit(main())
