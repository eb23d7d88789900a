"""CLI entry point for the gateway lifecycle harness.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``gateway-harness = "gateway_harness.cli:main"``.
Loads an optional YAML config, layers environment variables and flags on
top, and runs the SIGTERM scenario once.
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys
from typing import Any

from pydantic import ValidationError
import yaml

from gateway_harness.errors import HarnessError
from gateway_harness.models import HarnessConfig, ScenarioResult
from gateway_harness.scenario import (
    apply_env_overrides,
    configure_logging,
    run_gateway_scenario_sync,
)

_FLAG_FIELDS: dict[str, str] = {
    "executable": "executable",
    "entry": "entry",
    "cwd": "working_dir",
    "ready_timeout": "ready_timeout_seconds",
    "timeout": "scenario_timeout_seconds",
    "log_level": "log_level",
}


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="gateway-harness",
        description=(
            "Start a gateway, wait for it to listen, send SIGTERM and "
            "verify that it exits gracefully."
        ),
    )
    parser.add_argument("--config", default=None, help="Path to a harness config YAML file.")
    parser.add_argument("--executable", default=None, help="Runtime used to start the gateway.")
    parser.add_argument("--entry", default=None, help="Entry-point script of the gateway.")
    parser.add_argument("--cwd", default=None, help="Working directory for the gateway.")
    parser.add_argument(
        "--ready-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the gateway to listen.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Overall scenario timeout in seconds.",
    )
    parser.add_argument(
        "--keep-state-dir",
        action="store_true",
        help="Do not delete the temporary state directory afterwards.",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (e.g. DEBUG).")
    return parser


def _load_yaml(path: str) -> dict[str, Any]:
    """Load a YAML file that must contain a mapping.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not parse to a mapping.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"config file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        msg = f"config file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)

    return data


def build_config(args: argparse.Namespace) -> HarnessConfig:
    """Resolve the harness config: YAML file, then env vars, then flags."""
    data = _load_yaml(args.config) if args.config is not None else {}
    config = apply_env_overrides(HarnessConfig(**data))

    updates: dict[str, Any] = {}
    for flag, field_name in _FLAG_FIELDS.items():
        value = getattr(args, flag)
        if value is not None:
            updates[field_name] = value
    if args.keep_state_dir:
        updates["keep_state_dir"] = True
    if not updates:
        return config
    # Re-validate so flag values go through the same validators.
    return HarnessConfig(**{**config.model_dump(), **updates})


def _print_startup_summary(config: HarnessConfig) -> None:
    sep = "=" * 60
    print(sep)
    print("Gateway SIGTERM check")
    print(sep)
    print(f"  Command:      {config.executable} {' '.join(config.runtime_args)} {config.entry}")
    print(f"  Working dir:  {config.working_dir or Path.cwd()}")
    print(f"  Signal:       {config.termination_signal.name}")
    print(f"  Ready within: {config.ready_timeout_seconds:g}s")
    print(f"  Time limit:   {config.scenario_timeout_seconds:g}s")
    print(sep)


def _print_result(result: ScenarioResult) -> None:
    print("PASS: gateway shut down gracefully.")
    print(f"  Port:         {result.port}")
    print(f"  Exit status:  {result.outcome.describe()} (accepted by {result.reason})")
    print(f"  Ready after:  {result.ready_after_seconds:.2f}s")
    print(f"  Duration:     {result.duration_seconds:.2f}s")


def main(argv: list[str] | None = None) -> int:
    """Entry point for the gateway-harness CLI.

    Returns:
        Exit code: 0 when the gateway shut down gracefully, 1 otherwise.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (OSError, ValueError, ValidationError, yaml.YAMLError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config)
    _print_startup_summary(config)

    try:
        result = run_gateway_scenario_sync(config)
    except HarnessError as exc:
        print(f"FAIL: {type(exc).__name__}", file=sys.stderr)
        print(str(exc), file=sys.stderr)
        return 1

    _print_result(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
