#!/usr/bin/env python3
"""
billchain CLI

Offline inspection of bill chains stored as JSON
(`{"bill_id": ..., "blocks": [...]}`, the FileChainStore layout).

Usage:
    billchain <command> [subcommand] [options]

Commands:
    keygen      Generate an Ed25519 key (OKP JWK) and print its did:key
    verify      Audit a chain file: linkage, hashes, signatures, transitions
    state       Print the derived bill state of a valid chain file
    compare     Run reconciliation of one chain file against another
    config      Configuration management
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from billchain import __version__
from billchain.chain import BillChain
from billchain.config import ConfigError, get_config_manager
from billchain.core import load_json, now_unix
from billchain.crypto import Ed25519KeyPair
from billchain.errors import BillChainError
from billchain.observability import Layer, configure_logging, get_logger
from billchain.reconciler import ForkChoicePolicy, Reconciler
from billchain.transitions import TransitionValidator

logger = get_logger("main", Layer.CLI)


class OutputFormat(Enum):
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _load_chain(path: str) -> BillChain:
    p = Path(path)
    if not p.exists():
        raise CLIError(f"File not found: {path}")
    try:
        return BillChain.from_dict(load_json(p))
    except json.JSONDecodeError as ex:
        raise CLIError(f"{path}: invalid JSON: {ex}")
    except BillChainError as ex:
        raise CLIError(f"{path}: {ex.message}")


class BillChainCLI:
    """Main CLI application."""

    def __init__(self):
        self.exit_code = 0
        self.parser = argparse.ArgumentParser(
            prog="billchain",
            description="Bill of exchange chain engine CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"billchain {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        keygen = self.subparsers.add_parser("keygen", help="Generate an Ed25519 key")
        keygen.add_argument("--out", "-o", help="Write the private JWK to this path")
        keygen.add_argument("--kid", default="key-1", help="Key id")

        verify = self.subparsers.add_parser("verify", help="Audit a chain file")
        verify.add_argument("chain", help="Chain JSON file")

        state = self.subparsers.add_parser("state", help="Derived state of a chain file")
        state.add_argument("chain", help="Chain JSON file")
        state.add_argument("--at", type=int, help="Unix time for the effective status (default: now)")

        compare = self.subparsers.add_parser("compare", help="Reconcile INCOMING against LOCAL")
        compare.add_argument("local", help="Local chain JSON file")
        compare.add_argument("incoming", help="Incoming chain JSON file")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., sync.inbound_queue_size)")
        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")

    def run(self, args: Optional[List[str]] = None) -> int:
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            mgr = get_config_manager()
            if parsed.config:
                mgr.load_from_file(parsed.config)
            else:
                mgr.load_defaults()
            obs = mgr.config.observability
            configure_logging(obs.log_level.get(), obs.log_format.get())

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return self.exit_code

        except (CLIError, ConfigError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return getattr(e, "exit_code", 1)

    def _dispatch(self, args: argparse.Namespace) -> Any:
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip())

        return handler(args)

    def _validator(self) -> TransitionValidator:
        return TransitionValidator(deadlines=get_config_manager().config.build_deadlines())

    def _handle_keygen(self, args: argparse.Namespace) -> Any:
        key = Ed25519KeyPair.generate()
        jwk = key.to_jwk(kid=args.kid)
        if args.out:
            out = Path(args.out)
            out.write_text(json.dumps(jwk, indent=2) + "\n", encoding="utf-8")
            return {"identity": key.identity, "path": str(out)}
        return {"identity": key.identity, "jwk": jwk}

    def _handle_verify(self, args: argparse.Namespace) -> Any:
        chain = _load_chain(args.chain)
        audit = self._validator().audit_chain(chain)
        if not audit.ok:
            self.exit_code = 2
        return audit.to_dict()

    def _handle_state(self, args: argparse.Namespace) -> Any:
        chain = _load_chain(args.chain)
        validator = self._validator()
        try:
            state = validator.validate_chain(chain)
        except BillChainError as ex:
            raise CLIError(f"chain is invalid: {ex.error_code}: {ex.message}", exit_code=2)
        at = args.at if args.at is not None else now_unix()
        out = state.to_dict()
        out["effective_status"] = state.effective_status(at, validator.deadlines).value
        return out

    def _handle_compare(self, args: argparse.Namespace) -> Any:
        local = _load_chain(args.local)
        incoming = _load_chain(args.incoming)
        order = get_config_manager().get("reconciler.tie_break_order")
        reconciler = Reconciler(self._validator(), ForkChoicePolicy(order))
        outcome = reconciler.reconcile_chain(local, incoming)
        return {
            "outcome": outcome.kind.value,
            "replaced": outcome.replaced,
            "reason": outcome.reason,
            "divergence_index": outcome.divergence_index,
            "winner_tip": outcome.chain.tip.hash if outcome.chain is not None and outcome.chain.tip else None,
        }

    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": get_config_manager().get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors:
            self.exit_code = 1
        return {"valid": not errors, "errors": errors}


def main(argv: Optional[List[str]] = None) -> int:
    return BillChainCLI().run(argv)


if __name__ == "__main__":
    sys.exit(main())
