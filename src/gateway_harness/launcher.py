"""Gateway launcher: state directory, config file, environment, argv and spawn.

Provides the pieces needed to start the gateway under test in isolation:
a fresh temporary state directory, a minimal JSON configuration file, an
environment layered on top of the current one, the effective argv for the
current platform, and the async spawn itself, which returns a
``GatewayProcess`` handle with its output already wired into an
``OutputCollector``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from pathlib import Path
import signal
from string import Template
import sys
import tempfile
from types import MappingProxyType
from typing import TYPE_CHECKING

from gateway_harness.errors import SpawnError
from gateway_harness.models import (
    BindMode,
    ExitOutcome,
    GatewayConfigFile,
    GatewayMode,
    GatewaySection,
    HarnessConfig,
)
from gateway_harness.output import OutputCollector

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

_KILL_REAP_SECONDS = 5.0
_EXIT_POLL_SECONDS = 0.01


# ---------------------------------------------------------------------------
# State directory and configuration file
# ---------------------------------------------------------------------------


def prepare_state_dir(config: HarnessConfig) -> Path:
    """Create a fresh, empty temporary state directory for one scenario."""
    return Path(tempfile.mkdtemp(prefix=f"{config.service_name}-gateway-test-"))


def write_gateway_config(
    state_dir: Path,
    mode: GatewayMode,
    port: int,
    filename: str,
) -> Path:
    """Write ``{"gateway": {"mode": ..., "port": ...}}`` into *state_dir*.

    Args:
        state_dir: Directory that receives the file.
        mode: Gateway operating mode.
        port: Port the gateway should listen on.
        filename: Name of the configuration file.

    Returns:
        Path of the written file.
    """
    document = GatewayConfigFile(gateway=GatewaySection(mode=mode, port=port))
    path = state_dir / filename
    path.write_text(
        json.dumps(document.model_dump(mode="json"), indent=2),
        encoding="utf-8",
    )
    return path


def read_gateway_config(path: Path) -> GatewayConfigFile:
    """Parse a configuration file written by :func:`write_gateway_config`."""
    return GatewayConfigFile.model_validate_json(path.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Arguments and environment
# ---------------------------------------------------------------------------


def build_gateway_args(
    port: int,
    bind: BindMode = BindMode.LOOPBACK,
    allow_unconfigured: bool = True,
) -> list[str]:
    """Build the gateway subcommand arguments."""
    args = ["gateway", "--port", str(port), "--bind", str(bind)]
    if allow_unconfigured:
        args.append("--allow-unconfigured")
    return args


def build_gateway_env(
    config: HarnessConfig,
    state_dir: Path,
    config_path: Path,
    base_env: Mapping[str, str] | None = None,
) -> Mapping[str, str]:
    """Layer the test-scoped overrides on top of *base_env*.

    Respawning is disabled, state and config are redirected into
    *state_dir*, optional subsystems (channels, browser control server,
    canvas host) are skipped, and the bridge listens on an OS-chosen
    loopback port so concurrent gateways never collide. ``extra_env`` from
    the config is applied last.

    Args:
        config: Harness configuration (supplies the variable prefix).
        state_dir: Isolated state directory.
        config_path: Isolated configuration file.
        base_env: Environment to extend; defaults to ``os.environ``.

    Returns:
        A read-only mapping; ``base_env`` is never modified.
    """
    prefix = config.env_prefix
    env = dict(os.environ if base_env is None else base_env)
    env.update(
        {
            f"{prefix}NO_RESPAWN": "1",
            f"{prefix}STATE_DIR": str(state_dir),
            f"{prefix}CONFIG_PATH": str(config_path),
            f"{prefix}SKIP_CHANNELS": "1",
            f"{prefix}SKIP_BROWSER_CONTROL_SERVER": "1",
            f"{prefix}SKIP_CANVAS_HOST": "1",
            f"{prefix}BRIDGE_HOST": "127.0.0.1",
            f"{prefix}BRIDGE_PORT": "0",
        }
    )
    env.update(config.extra_env)
    return MappingProxyType(env)


# ---------------------------------------------------------------------------
# Platform bootstrap
# ---------------------------------------------------------------------------

_PYTHON_BOOTSTRAP = Template(
    """\
import json
import os
import runpy
import sys

entry = os.environ.get("${prefix}ENTRY_PATH")
raw_args = os.environ.get("${prefix}ENTRY_ARGS", "[]")
if not entry:
    print("Missing ${prefix}ENTRY_PATH", file=sys.stderr)
    sys.exit(1)
try:
    entry_args = json.loads(raw_args)
except ValueError as exc:
    print(f"Failed to parse ${prefix}ENTRY_ARGS: {exc}", file=sys.stderr)
    sys.exit(1)
sys.argv = [entry, *entry_args]
runpy.run_path(entry, run_name="__main__")
"""
)

_MODULE_BOOTSTRAP = Template(
    """\
import { pathToFileURL } from "node:url";
const entry = process.env.${prefix}ENTRY_PATH;
const rawArgs = process.env.${prefix}ENTRY_ARGS ?? "[]";
if (!entry) {
  console.error("Missing ${prefix}ENTRY_PATH");
  process.exit(1);
}
let entryArgs = [];
try {
  entryArgs = JSON.parse(rawArgs);
} catch (err) {
  console.error("Failed to parse ${prefix}ENTRY_ARGS", err);
  process.exit(1);
}
process.argv = [process.argv[0], entry, ...entryArgs];
await import(pathToFileURL(entry).href);
"""
)


def _write_bootstrap(config: HarnessConfig, state_dir: Path) -> Path:
    if config.entry.endswith(".py"):
        template, name = _PYTHON_BOOTSTRAP, f"{config.service_name}-entry-bootstrap.py"
    else:
        template, name = _MODULE_BOOTSTRAP, f"{config.service_name}-entry-bootstrap.mjs"
    path = state_dir / name
    path.write_text(template.substitute(prefix=config.env_prefix), encoding="utf-8")
    return path


def build_effective_argv(
    config: HarnessConfig,
    entry_args: Sequence[str],
    state_dir: Path,
    env: Mapping[str, str],
    platform: str = sys.platform,
) -> tuple[list[str], Mapping[str, str]]:
    """Build the argv (and any extra env) that runs the entry with *entry_args*.

    On Windows the entry and its arguments cannot be passed through the
    command line unchanged, so a small bootstrap script is written into
    *state_dir*; it reads the entry path and a JSON argument list from the
    environment, restores argv and runs the entry. Everywhere else the
    entry is invoked directly.

    Args:
        config: Harness configuration (executable, runtime args, entry).
        entry_args: Arguments for the entry point.
        state_dir: Scenario state directory; receives the bootstrap script.
        env: Environment built by :func:`build_gateway_env`.
        platform: Value of ``sys.platform`` to build for.

    Returns:
        ``(argv, env)``; *env* is returned unchanged unless a bootstrap was
        needed.
    """
    if platform != "win32":
        argv = [config.executable, *config.runtime_args, config.entry, *entry_args]
        return argv, env

    bootstrap = _write_bootstrap(config, state_dir)
    working_dir = Path(config.working_dir) if config.working_dir else Path.cwd()
    entry_path = (working_dir / config.entry).resolve()
    merged = dict(env)
    merged[f"{config.env_prefix}ENTRY_PATH"] = str(entry_path)
    merged[f"{config.env_prefix}ENTRY_ARGS"] = json.dumps(list(entry_args))
    argv = [config.executable, *config.runtime_args, str(bootstrap)]
    return argv, MappingProxyType(merged)


# ---------------------------------------------------------------------------
# Child process handle
# ---------------------------------------------------------------------------


class GatewayProcess:
    """Handle to a spawned gateway.

    The exit outcome is a one-shot future: it is resolved exactly once,
    either by the background exit watcher or by the first caller that
    notices the process has already terminated.
    """

    def __init__(self, proc: asyncio.subprocess.Process, output: OutputCollector) -> None:
        self._proc = proc
        self.output = output
        loop = asyncio.get_running_loop()
        self._exit: asyncio.Future[ExitOutcome] = loop.create_future()
        self._watcher = asyncio.create_task(self._watch_exit(), name=f"exit-{proc.pid}")

    async def _watch_exit(self) -> None:
        # Process.wait() also waits for the pipes to close, which a
        # descendant holding stdout open can delay indefinitely.
        while self._proc.returncode is None:
            await asyncio.sleep(_EXIT_POLL_SECONDS)
        self._resolve(self._proc.returncode)

    def _resolve(self, returncode: int) -> None:
        if self._exit.done():
            return
        outcome = ExitOutcome.from_returncode(returncode)
        logger.debug("pid %d exited: %s", self.pid, outcome.describe())
        self._exit.set_result(outcome)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def outcome(self) -> ExitOutcome | None:
        """The exit outcome, or ``None`` while the process is running."""
        if not self._exit.done() and self._proc.returncode is not None:
            self._resolve(self._proc.returncode)
        return self._exit.result() if self._exit.done() else None

    @property
    def is_running(self) -> bool:
        return self.outcome is None

    def send_signal(self, sig: signal.Signals) -> None:
        """Deliver *sig* to the gateway process itself."""
        self._proc.send_signal(sig)

    async def wait(self) -> ExitOutcome:
        """Wait for the process to exit and return its outcome."""
        return await asyncio.shield(self._exit)

    async def kill(self) -> None:
        """Force-terminate the gateway and everything left in its process group.

        On POSIX the group is killed even after the gateway itself has
        exited, so helpers it started do not outlive the scenario. Safe to
        call repeatedly.
        """
        was_running = self.is_running
        if was_running:
            logger.info("Force-killing gateway pid %d", self.pid)
        if sys.platform == "win32":
            if was_running:
                with contextlib.suppress(ProcessLookupError):
                    self._proc.kill()
        else:
            # Spawned with start_new_session, so the pgid equals the pid.
            # An empty group raises ProcessLookupError.
            with contextlib.suppress(OSError):
                os.killpg(self.pid, signal.SIGKILL)
        if was_running:
            try:
                await asyncio.wait_for(self.wait(), timeout=_KILL_REAP_SECONDS)
            except TimeoutError:
                logger.warning("Gateway pid %d not reaped after SIGKILL", self.pid)
        if not self._watcher.done():
            self._watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watcher


async def spawn_gateway(
    argv: Sequence[str],
    working_dir: str | Path | None,
    env: Mapping[str, str],
) -> GatewayProcess:
    """Start the gateway and wire its output into a fresh collector.

    stdin is closed, stdout and stderr are piped, and on POSIX the child
    gets its own session so cleanup can kill the whole process group.

    Args:
        argv: Effective argv from :func:`build_effective_argv`.
        working_dir: Working directory for the child, or ``None`` for cwd.
        env: Complete environment for the child.

    Returns:
        A running ``GatewayProcess``.

    Raises:
        SpawnError: If the executable cannot be started.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=working_dir,
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=sys.platform != "win32",
        )
    except OSError as exc:
        msg = f"failed to spawn gateway {list(argv)!r}: {exc}"
        raise SpawnError(msg) from exc

    output = OutputCollector()
    output.attach(proc.stdout, proc.stderr)
    logger.info("Spawned gateway pid %d: %s", proc.pid, " ".join(argv))
    return GatewayProcess(proc, output)
