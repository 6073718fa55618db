#!/usr/bin/env python3
"""MCP server exposing a single Docker-backed agent sandbox as tools."""

import asyncio
import functools
import json
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, NamedTuple, Optional
from urllib.parse import urlsplit

from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only, stdout is MCP protocol) ───────────────────────

_DEBUG = os.environ.get("SANDBOX_DEBUG", "").strip().lower() in ("1", "true", "yes")

logging.basicConfig(
    level=logging.DEBUG if _DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("agent-sandbox")

# ── Config ───────────────────────────────────────────────────────────────

DOCKER_BINARY = "docker"

# Bind-mount target and default working directory inside the sandbox
CONTAINER_WORKSPACE = "/root/workspace"

# One base image per runtime kind; add entries to support more kinds
RUNTIME_IMAGES: dict[str, str] = {
    "node": "node:20-bullseye",
    "python": "python:3.11-slim",
}
DEFAULT_RUNTIME = os.environ.get("SANDBOX_DEFAULT_RUNTIME", "node")

# Keeps the container alive without relying on tail/sleep infinity
IDLE_COMMAND = ["/bin/sh", "-lc", "while :; do sleep 3600; done"]

DEFAULT_EXEC_TIMEOUT_MS = 30_000
MAX_OUTPUT = 50_000

ENGINE_TIMEOUT = 60.0
PULL_TIMEOUT = 900.0
STOP_GRACE_SECONDS = 2

# Background servers
SERVER_START_GRACE = 1.0
SERVER_LOG_DIR = "/tmp"
SERVER_LOG_TAIL = 20

# Port reclamation
FREE_PORT_TIMEOUT_MS = 3000
FREE_PORT_POLL_INTERVAL = 0.2

GREP_MAX_RESULTS = 200

# Shell convention for "command not found"
TOOL_MISSING_EXIT = 127

# Structured failure reasons
REASON_CONFIGURATION = "configuration"
REASON_NO_SANDBOX = "no_sandbox"
REASON_TIMEOUT = "timeout"
REASON_PORT_CONFLICT = "port_conflict"
REASON_LAUNCH_FAILED = "launch_failed"
REASON_PARTIAL_RECLAMATION = "partial_reclamation"


# ── Errors ───────────────────────────────────────────────────────────────


class ConfigurationError(RuntimeError):
    """Engine endpoint missing. Fatal, never retried."""


class NoActiveSandbox(RuntimeError):
    pass


class ContainerEngineError(RuntimeError):
    pass


class ToolUnavailable(RuntimeError):
    """A shell tool the operation relies on is missing inside the sandbox."""


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


async def _run(
    cmd: list[str], timeout: float = 30.0, env: Optional[dict[str, str]] = None
) -> tuple[int, str, str]:
    log.debug(f"run: {' '.join(cmd)}")
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        if proc.returncode is None:
            proc.kill()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def _run_combined(
    cmd: list[str], env: Optional[dict[str, str]] = None
) -> tuple[int, str]:
    """Run with stderr folded into stdout. No timeout of its own; callers race it."""
    log.debug(f"run: {' '.join(cmd)}")
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=env,
    )
    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        # Only the local client dies; the in-container process keeps running.
        if proc.returncode is None:
            proc.kill()
        raise
    return proc.returncode or 0, stdout.decode(errors="replace")


def _truncate(text: str, limit: Optional[int] = None) -> str:
    limit = MAX_OUTPUT if limit is None else limit
    if len(text) <= limit:
        return text
    total = _humanize_bytes(len(text.encode()))
    return (
        text[:limit]
        + f"\n[truncated, {total} total, showing first {_humanize_bytes(limit)}]"
    )


def _sq(s: str) -> str:
    return "'" + s.replace("'", "'\\''") + "'"


_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SERVER_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _validate_env_key(key: str) -> bool:
    return bool(_ENV_KEY_RE.match(key))


def _format_export_line(key: str, value: str) -> str:
    return f"export {key}={_sq(value)}"


def _valid_port(port: Any) -> bool:
    return isinstance(port, int) and not isinstance(port, bool) and 0 < port < 65536


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 1)


def _failure(error: str, **fields: Any) -> dict:
    result: dict[str, Any] = {"success": False}
    result.update(fields)
    result["error"] = error
    return result


def _short(container_id: str) -> str:
    return container_id[:12]


# ── Engine endpoint ──────────────────────────────────────────────────────


class EngineEndpoint(NamedTuple):
    host_args: list[str]
    # None inherits the parent environment
    env: Optional[dict[str, str]]


def _format_tcp_host(hostname: str) -> str:
    return f"[{hostname}]" if ":" in hostname else hostname


def _engine_host_args(
    host: str, tls_verify: bool = False, cert_path: Optional[str] = None
) -> Optional[list[str]]:
    """
    Translate a DOCKER_HOST value into docker CLI connection flags.

    Accepts named pipes (npipe://), unix sockets (unix://), TCP
    (tcp://, http://, https://) and ssh:// endpoints. Returns None when
    the value cannot be understood.
    """
    host = host.strip()
    if host.startswith("npipe://"):
        pipe = host[len("npipe://") :].lstrip("/")
        if not pipe:
            return None
        return ["--host", f"npipe:////{pipe}"]

    if host.startswith("unix://"):
        path = host[len("unix://") :]
        if not path:
            return None
        if not path.startswith("/"):
            path = "/" + path
        return ["--host", f"unix://{path}"]

    try:
        parts = urlsplit(host)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if not parts.hostname:
        return None
    if scheme == "ssh":
        return ["--host", host]
    if scheme not in ("tcp", "http", "https"):
        return None

    tls = tls_verify or scheme == "https"
    if port is None:
        port = 2376 if tls else 2375
    args = ["--host", f"tcp://{_format_tcp_host(parts.hostname)}:{port}"]
    if tls:
        args.append("--tlsverify" if tls_verify else "--tls")
        if cert_path:
            args.extend(
                [
                    "--tlscacert",
                    os.path.join(cert_path, "ca.pem"),
                    "--tlscert",
                    os.path.join(cert_path, "cert.pem"),
                    "--tlskey",
                    os.path.join(cert_path, "key.pem"),
                ]
            )
    return args


def _resolve_engine_endpoint(environ: Optional[dict[str, str]] = None) -> EngineEndpoint:
    environ = dict(os.environ if environ is None else environ)
    host = environ.get("DOCKER_HOST", "").strip()
    if not host:
        raise ConfigurationError(
            "DOCKER_HOST is not set. Set DOCKER_HOST to npipe://./pipe/docker_engine (Windows), "
            "unix:///var/run/docker.sock (Linux/macOS), or tcp://host:port."
        )
    tls_verify = environ.get("DOCKER_TLS_VERIFY", "").strip() not in ("", "0")
    host_args = _engine_host_args(
        host, tls_verify=tls_verify, cert_path=environ.get("DOCKER_CERT_PATH") or None
    )
    if host_args is None:
        log.warning(
            f"Could not parse DOCKER_HOST={host!r}, falling back to engine auto-detection"
        )
        environ.pop("DOCKER_HOST", None)
        return EngineEndpoint(host_args=[], env=environ)
    log.debug(f"Engine endpoint: {' '.join(host_args)}")
    return EngineEndpoint(host_args=host_args, env=None)


# ── Container runtime ────────────────────────────────────────────────────


@dataclass
class VolumeBinding:
    host_path: str
    container_path: str
    mode: str = "rw"

    def to_arg(self) -> str:
        return f"{self.host_path}:{self.container_path}:{self.mode}"


@dataclass
class PortBinding:
    host_port: int
    container_port: int
    protocol: str = "tcp"

    def to_arg(self) -> str:
        return f"{self.host_port}:{self.container_port}/{self.protocol}"


# Output of a failed `docker` call that came from the engine, not the command
_ENGINE_ERROR_RE = re.compile(
    r"(Error response from daemon|Error: No such container|"
    r"Cannot connect to the Docker daemon|error during connect)"
)


class ContainerRuntime:
    """Async wrapper over the docker CLI."""

    def __init__(self, binary: Optional[str] = None):
        self._binary = binary
        self._endpoint: Optional[EngineEndpoint] = None

    def _get_endpoint(self) -> EngineEndpoint:
        if self._endpoint is None:
            self._endpoint = _resolve_engine_endpoint()
        return self._endpoint

    def _cmd(self, *args: str) -> list[str]:
        endpoint = self._get_endpoint()
        return [self._binary or DOCKER_BINARY, *endpoint.host_args, *args]

    async def _docker(
        self, *args: str, timeout: float = ENGINE_TIMEOUT
    ) -> tuple[int, str, str]:
        cmd = self._cmd(*args)
        try:
            return await _run(cmd, timeout=timeout, env=self._get_endpoint().env)
        except FileNotFoundError as e:
            raise ContainerEngineError(f"docker CLI not found: {cmd[0]}") from e
        except asyncio.TimeoutError as e:
            raise ContainerEngineError(
                f"docker {args[0]} timed out after {timeout}s"
            ) from e

    async def start(
        self,
        image: str,
        cmd: Optional[list[str]] = None,
        workdir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        volumes: Optional[list[VolumeBinding]] = None,
        ports: Optional[list[PortBinding]] = None,
        network: Optional[str] = None,
        name: Optional[str] = None,
    ) -> dict:
        """Create then start a container. Creation alone never starts it."""
        await self.pull_if_missing(image)

        create = ["create", "--tty"]
        if name:
            create.extend(["--name", name])
        if workdir:
            create.extend(["--workdir", workdir])
        for key, value in (env or {}).items():
            create.extend(["--env", f"{key}={value}"])
        for vol in volumes or []:
            create.extend(["--volume", vol.to_arg()])
        for port in ports or []:
            create.extend(["--publish", port.to_arg()])
        if network:
            create.extend(["--network", network])
        create.append(image)
        create.extend(cmd or [])

        code, stdout, stderr = await self._docker(*create)
        if code != 0 or not stdout.strip():
            raise ContainerEngineError(f"Create failed: {stderr.strip()}")
        container_id = stdout.strip().splitlines()[-1].strip()

        code, _, stderr = await self._docker("start", container_id)
        if code != 0:
            await self.stop(container_id, remove=True)
            raise ContainerEngineError(f"Start failed: {stderr.strip()}")

        details = await self.inspect(container_id)
        log.info(f"Container {_short(container_id)} started from {image}")
        return {
            "id": container_id,
            "name": (details.get("Name") or "").lstrip("/"),
            "state": details.get("State", {}),
            "mounts": details.get("Mounts", []),
        }

    async def inspect(self, container_id: str) -> dict:
        code, stdout, stderr = await self._docker("inspect", container_id)
        if code != 0:
            raise ContainerEngineError(f"Inspect failed: {stderr.strip()}")
        try:
            raw = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ContainerEngineError(f"Unreadable inspect output: {e}") from e
        if isinstance(raw, list):
            raw = raw[0] if raw else {}
        return raw if isinstance(raw, dict) else {}

    async def exec(
        self, container_id: str, cmd: list[str], workdir: Optional[str] = None
    ) -> dict:
        """
        Run a command in a running container and wait for it to exit.

        stdout and stderr come back combined. A nonzero exit of the command
        itself is reported in exit_code; only engine-side failures raise.
        """
        args = ["exec"]
        if workdir:
            args.extend(["--workdir", workdir])
        args.append(container_id)
        args.extend(cmd)
        full = self._cmd(*args)
        try:
            code, output = await _run_combined(full, env=self._get_endpoint().env)
        except FileNotFoundError as e:
            raise ContainerEngineError(f"docker CLI not found: {full[0]}") from e
        if code != 0 and _ENGINE_ERROR_RE.match(output.lstrip()):
            raise ContainerEngineError(output.strip())
        return {"output": output, "exit_code": code}

    async def stop(self, container_id: str, remove: bool = False) -> dict:
        """Best-effort stop (and remove). Never raises."""
        try:
            code, _, stderr = await self._docker(
                "stop",
                "-t",
                str(STOP_GRACE_SECONDS),
                container_id,
                timeout=STOP_GRACE_SECONDS + 30,
            )
            if code != 0:
                log.warning(f"Stop {_short(container_id)}: {stderr.strip()}")
        except Exception as e:
            log.warning(f"Stop {_short(container_id)} failed: {e}")
        if remove:
            try:
                code, _, stderr = await self._docker("rm", "-f", container_id)
                if code != 0:
                    log.warning(f"Remove {_short(container_id)}: {stderr.strip()}")
            except Exception as e:
                log.warning(f"Remove {_short(container_id)} failed: {e}")
        return {"ok": True}

    async def pull_if_missing(self, image: str) -> bool:
        """Pull `image` unless it is present locally. Returns True if pulled."""
        code, _, _ = await self._docker("image", "inspect", image)
        if code == 0:
            return False

        log.info(f"Pulling image {image} ...")
        cmd = self._cmd("pull", image)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._get_endpoint().env,
            )
        except FileNotFoundError as e:
            raise ContainerEngineError(f"docker CLI not found: {cmd[0]}") from e

        async def follow() -> int:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                line = raw.decode(errors="replace").strip()
                if line:
                    log.info(f"[pull] {line}")
            return await proc.wait()

        try:
            code = await asyncio.wait_for(follow(), timeout=PULL_TIMEOUT)
        except asyncio.TimeoutError as e:
            proc.kill()
            raise ContainerEngineError(
                f"Pull of {image} timed out after {PULL_TIMEOUT}s"
            ) from e
        if code != 0:
            raise ContainerEngineError(f"Pull failed for {image} (exit {code})")
        log.info(f"Pulled image {image}")
        return True

    async def list_images(self) -> list[str]:
        code, stdout, stderr = await self._docker(
            "images", "--format", "{{.Repository}}:{{.Tag}}"
        )
        if code != 0:
            raise ContainerEngineError(f"Listing images failed: {stderr.strip()}")
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    async def ping(self) -> dict:
        code, stdout, stderr = await self._docker("version", "--format", "{{json .}}")
        if code != 0:
            raise ContainerEngineError(
                f"Engine unreachable: {stderr.strip() or stdout.strip()}"
            )
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            data = {}
        server = data.get("Server") or {}
        return {
            "ok": True,
            "version": server.get("Version"),
            "api_version": server.get("ApiVersion"),
        }


# ── Sandbox lifecycle ────────────────────────────────────────────────────


@dataclass
class SandboxState:
    container_id: str
    runtime_kind: str
    host_volume_path: str
    container_volume_path: str = CONTAINER_WORKSPACE
    image: str = ""
    created_at: float = field(default_factory=time.time)

    def describe(self) -> dict:
        return {
            "container_id": self.container_id,
            "runtime_kind": self.runtime_kind,
            "host_volume_path": self.host_volume_path,
            "container_volume_path": self.container_volume_path,
            "image": self.image,
        }


def _image_for(runtime_kind: str) -> str:
    try:
        return RUNTIME_IMAGES[runtime_kind]
    except KeyError:
        known = ", ".join(sorted(RUNTIME_IMAGES))
        raise ValueError(
            f"Unknown runtime kind {runtime_kind!r} (known: {known})"
        ) from None


class SandboxManager:
    """
    Owns the single active sandbox.

    launch, switch_runtime and shutdown are serialized by one lock, and
    require_active() waits on it too, so a caller never observes a sandbox
    that is halfway through teardown. Calls already running inside the
    old container when a switch starts are not interrupted.
    """

    def __init__(self, runtime: Optional[ContainerRuntime] = None):
        self.runtime = runtime or ContainerRuntime()
        self._state: Optional[SandboxState] = None
        self._lock = asyncio.Lock()
        self._teardown_listeners: list[Callable[[str], None]] = []

    def add_teardown_listener(self, listener: Callable[[str], None]):
        """Register a callback that receives the container id of a torn-down sandbox."""
        self._teardown_listeners.append(listener)

    async def launch(
        self,
        runtime_kind: str,
        host_volume_path: str,
        reuse_container_id: Optional[str] = None,
    ) -> SandboxState:
        async with self._lock:
            return await self._launch_locked(
                runtime_kind, host_volume_path, reuse_container_id
            )

    async def _launch_locked(
        self,
        runtime_kind: str,
        host_volume_path: str,
        reuse_container_id: Optional[str] = None,
    ) -> SandboxState:
        image = _image_for(runtime_kind)
        abs_host = os.path.abspath(os.path.expanduser(host_volume_path))
        os.makedirs(abs_host, exist_ok=True)

        current = self._state
        if current is not None and current.container_id != reuse_container_id:
            await self._shutdown_locked()

        if reuse_container_id:
            self._state = SandboxState(
                container_id=reuse_container_id,
                runtime_kind=runtime_kind,
                host_volume_path=abs_host,
                image=image,
            )
            log.info(
                f"Adopted container {_short(reuse_container_id)} as {runtime_kind} sandbox"
            )
            return self._state

        info = await self.runtime.start(
            image=image,
            cmd=list(IDLE_COMMAND),
            workdir=CONTAINER_WORKSPACE,
            volumes=[VolumeBinding(abs_host, CONTAINER_WORKSPACE, "rw")],
        )
        self._state = SandboxState(
            container_id=info["id"],
            runtime_kind=runtime_kind,
            host_volume_path=abs_host,
            image=image,
        )
        log.info(
            f"Sandbox {_short(info['id'])} ready ({runtime_kind}, {image}), "
            f"{abs_host} -> {CONTAINER_WORKSPACE}"
        )
        return self._state

    async def switch_runtime(
        self, new_kind: str, host_volume_path: Optional[str] = None
    ) -> tuple[SandboxState, bool]:
        """
        Relaunch the sandbox with another runtime kind on the same host volume.

        Returns (state, switched). Nothing outside the workspace bind mount
        survives a switch, background servers included.
        """
        _image_for(new_kind)
        async with self._lock:
            current = self._state
            if current is not None and current.runtime_kind == new_kind:
                return current, False

            path = (current.host_volume_path if current else None) or host_volume_path
            if not path:
                raise NoActiveSandbox("No host volume path available for sandbox switch")

            if current is not None:
                log.info(
                    f"Switching sandbox runtime {current.runtime_kind} -> {new_kind}"
                )
                await self._shutdown_locked()
            state = await self._launch_locked(new_kind, path)
            return state, True

    async def shutdown(self) -> dict:
        async with self._lock:
            await self._shutdown_locked()
        return {"ok": True}

    async def _shutdown_locked(self):
        state = self._state
        if state is None:
            return
        try:
            await self.runtime.stop(state.container_id, remove=True)
        except Exception as e:
            log.warning(f"Stopping sandbox {_short(state.container_id)} failed: {e}")
        finally:
            self._state = None
        for listener in list(self._teardown_listeners):
            listener(state.container_id)
        log.info(f"Sandbox {_short(state.container_id)} shut down")

    def info(self) -> Optional[dict]:
        if self._state is None:
            return None
        return {
            "runtime_kind": self._state.runtime_kind,
            "container_id": self._state.container_id,
        }

    @property
    def active(self) -> Optional[SandboxState]:
        return self._state

    async def require_active(self) -> SandboxState:
        async with self._lock:
            state = self._state
        if state is None:
            raise NoActiveSandbox("Sandbox is not initialized; launch it first")
        return state

    async def exec(
        self,
        cmd: list[str],
        workdir: Optional[str] = None,
        container_id: Optional[str] = None,
    ) -> dict:
        if container_id is None:
            container_id = (await self.require_active()).container_id
        return await self.runtime.exec(container_id, cmd, workdir=workdir)

    async def sh(
        self,
        script: str,
        workdir: Optional[str] = None,
        container_id: Optional[str] = None,
    ) -> dict:
        return await self.exec(["sh", "-c", script], workdir=workdir, container_id=container_id)


async def _run_tool(
    manager: SandboxManager,
    script: str,
    tool: str,
    workdir: Optional[str] = None,
    container_id: Optional[str] = None,
) -> dict:
    result = await manager.sh(script, workdir=workdir, container_id=container_id)
    if result["exit_code"] == TOOL_MISSING_EXIT:
        raise ToolUnavailable(f"{tool} is not available in the sandbox")
    return result


# ── Command execution ────────────────────────────────────────────────────


class CommandExecutor:
    def __init__(self, manager: SandboxManager):
        self._manager = manager

    async def execute(
        self,
        command: str,
        args: Optional[list[str]] = None,
        workdir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> dict:
        """
        Run one command in the active sandbox, bounded by timeout_ms.

        Single attempt. On timeout the local client is abandoned while the
        process inside the container may keep running.
        """
        timeout_ms = DEFAULT_EXEC_TIMEOUT_MS if timeout_ms is None else timeout_ms
        argv = [command, *(args or [])]
        if env:
            bad = [k for k in env if not _validate_env_key(k)]
            if bad:
                return _failure(
                    f"Invalid env key(s): {', '.join(bad)}",
                    output="",
                    command=" ".join(argv),
                )
            argv = ["env", *(f"{k}={v}" for k, v in env.items()), *argv]
        shown = " ".join(argv)
        if timeout_ms <= 0:
            return _failure(f"Invalid timeout: {timeout_ms}ms", output="", command=shown)

        async def _go() -> dict:
            # Waiting out a launch/switch counts against the same deadline
            state = await self._manager.require_active()
            return await self._manager.runtime.exec(
                state.container_id, argv, workdir=workdir or CONTAINER_WORKSPACE
            )

        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(_go(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            log.warning(f"Command timed out after {timeout_ms}ms: {shown[:200]}")
            return _failure(
                f"Command timed out after {timeout_ms}ms",
                output="",
                command=shown,
                duration_ms=_elapsed_ms(t0),
                reason=REASON_TIMEOUT,
            )
        except NoActiveSandbox as e:
            return _failure(str(e), output="", command=shown, reason=REASON_NO_SANDBOX)
        except ConfigurationError as e:
            return _failure(str(e), output="", command=shown, reason=REASON_CONFIGURATION)
        except ContainerEngineError as e:
            return _failure(str(e), output="", command=shown, duration_ms=_elapsed_ms(t0))

        return {
            "success": True,
            "output": _truncate(result["output"]),
            "exit_code": result["exit_code"],
            "duration_ms": _elapsed_ms(t0),
            "command": shown,
        }


# ── Port resolution ──────────────────────────────────────────────────────


class ProcessDescriptor(NamedTuple):
    pid: int
    method: str


class StrategyOutcome(NamedTuple):
    method: str
    available: bool
    pids: list[int]
    detail: str = ""


_SS_PID_RE = re.compile(r"pid=(\d+)")
_NETSTAT_PID_RE = re.compile(r"(?:^|\s)(\d+)/\S*")
_BARE_PID_RE = re.compile(r"^\s*(\d+)\s*$", re.MULTILINE)


def _port_lines(text: str, port: int) -> list[str]:
    pattern = re.compile(rf":{port}(?!\d)")
    return [line for line in text.splitlines() if pattern.search(line)]


def _parse_ss_pids(text: str, port: int) -> list[int]:
    """`ss -lntp` lines: ... users:(("node",pid=4242,fd=19))"""
    pids: set[int] = set()
    for line in _port_lines(text, port):
        pids.update(int(m) for m in _SS_PID_RE.findall(line))
    return sorted(p for p in pids if p > 0)


def _parse_netstat_pids(text: str, port: int) -> list[int]:
    """`netstat -ltnp` lines: ... LISTEN 4242/node"""
    pids: set[int] = set()
    for line in _port_lines(text, port):
        pids.update(int(m) for m in _NETSTAT_PID_RE.findall(line))
    return sorted(p for p in pids if p > 0)


def _parse_bare_pids(text: str, port: int = 0) -> list[int]:
    pids = {int(m) for m in _BARE_PID_RE.findall(text)}
    return sorted(p for p in pids if p > 0)


def _ss_script() -> str:
    return "command -v ss >/dev/null 2>&1 || exit 127; ss -lntp 2>/dev/null"


def _netstat_script() -> str:
    return "command -v netstat >/dev/null 2>&1 || exit 127; netstat -ltnp 2>/dev/null"


def _proc_script(port: int) -> str:
    # LISTEN (0A) sockets on the port -> socket inodes -> owning pids via fd links
    hex_port = f"{port:04X}"
    return (
        "[ -r /proc/net/tcp ] || exit 127; "
        "inodes=$(cat /proc/net/tcp /proc/net/tcp6 2>/dev/null | "
        f"awk '$4 == \"0A\" && substr($2, length($2) - 4) == \":{hex_port}\" {{print $10}}' | sort -u); "
        '[ -n "$inodes" ] || exit 0; '
        "for fd in /proc/[0-9]*/fd/*; do "
        'link=$(readlink "$fd" 2>/dev/null) || continue; '
        "for ino in $inodes; do "
        '[ "$link" = "socket:[$ino]" ] && echo "$fd" | cut -d/ -f3; '
        "done; "
        "done | sort -u"
    )


class PortResolver:
    """
    Maps a TCP port to the pids listening on it inside the sandbox.

    Strategies run in order (ss, netstat, /proc); the first one that finds
    pids wins. A strategy whose tool is missing is skipped, and the call
    only fails when none of them could run.
    """

    def __init__(self, manager: SandboxManager):
        self._manager = manager

    def _strategies(self, port: int) -> list[tuple[str, str, Callable[[str, int], list[int]]]]:
        return [
            ("ss", _ss_script(), _parse_ss_pids),
            ("netstat", _netstat_script(), _parse_netstat_pids),
            ("/proc", _proc_script(port), _parse_bare_pids),
        ]

    async def _run_strategy(
        self, method: str, script: str, parser: Callable[[str, int], list[int]], port: int
    ) -> StrategyOutcome:
        try:
            result = await _run_tool(self._manager, script, method)
        except (ToolUnavailable, ContainerEngineError) as e:
            log.debug(f"Port strategy {method} unavailable: {e}")
            return StrategyOutcome(method, False, [], str(e))
        return StrategyOutcome(method, True, parser(result["output"], port))

    async def find_pids_by_port(self, port: int) -> dict:
        if not _valid_port(port):
            return _failure(f"Invalid port: {port!r}", pids=[])
        try:
            await self._manager.require_active()
            outcomes: list[StrategyOutcome] = []
            for method, script, parser in self._strategies(port):
                outcome = await self._run_strategy(method, script, parser, port)
                outcomes.append(outcome)
                if outcome.pids:
                    return {
                        "success": True,
                        "pids": outcome.pids,
                        "method": method,
                        "processes": [
                            ProcessDescriptor(pid, method)._asdict() for pid in outcome.pids
                        ],
                    }
        except NoActiveSandbox as e:
            return _failure(str(e), pids=[], reason=REASON_NO_SANDBOX)
        except ConfigurationError as e:
            return _failure(str(e), pids=[], reason=REASON_CONFIGURATION)

        ran = [o for o in outcomes if o.available]
        if ran:
            return {"success": True, "pids": [], "method": ran[-1].method, "processes": []}
        details = "; ".join(f"{o.method}: {o.detail}" for o in outcomes)
        return _failure(f"No port discovery method available ({details})", pids=[])


# ── Process control ──────────────────────────────────────────────────────


_SIGNAL_RE = re.compile(r"^[A-Z0-9]+$")


def _normalize_signal(signal: Any) -> Optional[str]:
    sig = str(signal).strip().upper().lstrip("-")
    if sig.startswith("SIG"):
        sig = sig[3:]
    return sig if _SIGNAL_RE.match(sig) else None


def _proc_state_script(pid: int) -> str:
    return (
        f"if [ -r /proc/{pid}/stat ]; then "
        f"sed -e 's/^.*) //' /proc/{pid}/stat | cut -d' ' -f1; "
        "elif command -v ps >/dev/null 2>&1; then "
        f"ps -o stat= -p {pid} 2>/dev/null; "
        "fi"
    )


_PS_SCRIPT = (
    "if command -v ps >/dev/null 2>&1 && ps -eo pid=,ppid=,stat=,etime=,args= >/dev/null 2>&1; then "
    "ps -eo pid=,ppid=,stat=,etime=,args=; "
    "elif [ -d /proc/1 ]; then "
    "for d in /proc/[0-9]*; do "
    's=$(sed -e \'s/^.*) //\' "$d/stat" 2>/dev/null) || continue; '
    "set -- $s; "
    "c=$(tr '\\0' ' ' < \"$d/cmdline\" 2>/dev/null); "
    'echo "${d#/proc/} $2 $1 - $c"; '
    "done; "
    "else exit 127; fi"
)


def _process_info_script(pid: int) -> str:
    return (
        f"d=/proc/{pid}; "
        '[ -d "$d" ] || exit 3; '
        's=$(sed -e \'s/^.*) //\' "$d/stat" 2>/dev/null); '
        "set -- $s; "
        'echo "state=$1"; '
        'echo "ppid=$2"; '
        "echo \"command=$(tr '\\0' ' ' < \"$d/cmdline\" 2>/dev/null)\"; "
        'echo "cwd=$(readlink "$d/cwd" 2>/dev/null)"; '
        "echo \"threads=$(awk '/^Threads:/{print $2}' \"$d/status\" 2>/dev/null)\"; "
        "echo \"rss_kb=$(awk '/^VmRSS:/{print $2}' \"$d/status\" 2>/dev/null)\"; "
        # listening sockets owned by the pid, as listen=<hex addr:port> lines
        'for fd in "$d"/fd/*; do readlink "$fd" 2>/dev/null; done '
        "| sed -n 's/^socket:\\[\\([0-9]*\\)\\]$/\\1/p' "
        "| while read ino; do "
        "awk -v i=\"$ino\" '$4 == \"0A\" && $10 == i {print \"listen=\" $2}' "
        "/proc/net/tcp /proc/net/tcp6 2>/dev/null; "
        "done"
    )


def _parse_listen_ports(text: str) -> list[int]:
    ports = set()
    for line in text.splitlines():
        if not line.startswith("listen="):
            continue
        _, _, hex_port = line.strip().rpartition(":")
        try:
            ports.add(int(hex_port, 16))
        except ValueError:
            continue
    return sorted(ports)


def _parse_process_table(text: str) -> list[dict]:
    """Rows of `pid ppid stat etime args`; etime is '-' when unknown."""
    processes = []
    for line in text.splitlines():
        parts = line.split(None, 4)
        if len(parts) < 4 or not parts[0].isdigit():
            continue
        processes.append(
            {
                "pid": int(parts[0]),
                "ppid": int(parts[1]) if parts[1].isdigit() else None,
                "stat": parts[2],
                "elapsed": None if parts[3] == "-" else parts[3],
                "command": parts[4].strip() if len(parts) > 4 else "",
            }
        )
    return processes


def _parse_key_values(text: str) -> dict[str, str]:
    values = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


class ProcessController:
    def __init__(self, manager: SandboxManager, resolver: PortResolver):
        self._manager = manager
        self._resolver = resolver

    async def kill_pid(
        self, pid: int, signal: str = "TERM", container_id: Optional[str] = None
    ) -> dict:
        """Send a signal, trying `kill -s SIG` first and `kill -SIG` second."""
        sig = _normalize_signal(signal)
        if sig is None:
            return _failure(f"Invalid signal: {signal!r}", pid=pid, signal=str(signal))
        if not isinstance(pid, int) or isinstance(pid, bool) or pid < 2:
            return _failure(f"Refusing to signal pid {pid!r}", pid=pid, signal=sig)

        errors = []
        for script in (f"kill -s {sig} {pid}", f"kill -{sig} {pid}"):
            try:
                result = await self._manager.sh(script, container_id=container_id)
            except NoActiveSandbox as e:
                return _failure(str(e), pid=pid, signal=sig, reason=REASON_NO_SANDBOX)
            except ConfigurationError as e:
                return _failure(str(e), pid=pid, signal=sig, reason=REASON_CONFIGURATION)
            except ContainerEngineError as e:
                errors.append(str(e))
                continue
            if result["exit_code"] == 0:
                log.debug(f"Sent {sig} to {pid}")
                return {"success": True, "pid": pid, "signal": sig, "message": "Signal sent"}
            errors.append(result["output"].strip() or f"exit code {result['exit_code']}")
        return _failure("; ".join(errors), pid=pid, signal=sig)

    async def free_port(self, port: int, timeout_ms: Optional[int] = None) -> dict:
        """
        Terminate whatever listens on `port`: TERM, poll until clear or
        deadline, KILL the survivors, then verify once more.
        """
        timeout_ms = FREE_PORT_TIMEOUT_MS if timeout_ms is None else timeout_ms
        killed: list[int] = []

        found = await self._resolver.find_pids_by_port(port)
        if not found["success"]:
            return _failure(
                found.get("error", "Port lookup failed"),
                reason=found.get("reason"),
                port=port,
                killed_pids=killed,
                remaining_pids=[],
            )
        pids = found["pids"]
        if not pids:
            return {"success": True, "port": port, "killed_pids": [], "remaining_pids": []}

        log.info(f"Freeing port {port}: TERM {pids}")
        for pid in pids:
            result = await self.kill_pid(pid, "TERM")
            if result["success"]:
                killed.append(pid)

        deadline = time.monotonic() + timeout_ms / 1000
        while time.monotonic() < deadline:
            await asyncio.sleep(FREE_PORT_POLL_INTERVAL)
            found = await self._resolver.find_pids_by_port(port)
            if found["success"]:
                pids = found["pids"]
                if not pids:
                    return {
                        "success": True,
                        "port": port,
                        "killed_pids": killed,
                        "remaining_pids": [],
                    }

        log.warning(f"Port {port} still held by {pids} after {timeout_ms}ms, sending KILL")
        for pid in pids:
            result = await self.kill_pid(pid, "KILL")
            if result["success"] and pid not in killed:
                killed.append(pid)

        final = await self._resolver.find_pids_by_port(port)
        # An unverifiable final check counts against us
        remaining = final["pids"] if final["success"] else pids
        if not remaining:
            return {"success": True, "port": port, "killed_pids": killed, "remaining_pids": []}
        return _failure(
            "Some processes could not be killed",
            port=port,
            killed_pids=killed,
            remaining_pids=remaining,
            reason=REASON_PARTIAL_RECLAMATION,
        )

    async def process_state(
        self, pid: int, container_id: Optional[str] = None
    ) -> Optional[str]:
        """Single-letter process state (R, S, Z, ...) or None if the pid is gone."""
        result = await self._manager.sh(_proc_state_script(pid), container_id=container_id)
        state = result["output"].strip()
        return state[:1] if state else None

    async def is_alive(self, pid: int, container_id: Optional[str] = None) -> bool:
        state = await self.process_state(pid, container_id=container_id)
        return state is not None and state not in ("Z", "X")

    async def list_processes(self) -> dict:
        try:
            result = await _run_tool(self._manager, _PS_SCRIPT, "ps")
        except NoActiveSandbox as e:
            return _failure(str(e), processes=[], count=0, reason=REASON_NO_SANDBOX)
        except (ToolUnavailable, ContainerEngineError) as e:
            return _failure(str(e), processes=[], count=0)
        processes = _parse_process_table(result["output"])
        return {"success": True, "processes": processes, "count": len(processes)}

    async def get_process_info(self, pid: int) -> dict:
        if not isinstance(pid, int) or isinstance(pid, bool) or pid < 1:
            return _failure(f"Invalid pid: {pid!r}", pid=pid)
        try:
            result = await self._manager.sh(_process_info_script(pid))
        except NoActiveSandbox as e:
            return _failure(str(e), pid=pid, reason=REASON_NO_SANDBOX)
        except ContainerEngineError as e:
            return _failure(str(e), pid=pid)
        if result["exit_code"] != 0:
            return _failure(f"Process {pid} not found", pid=pid)

        values = _parse_key_values(result["output"])
        state = values.get("state") or None
        ppid = values.get("ppid", "")
        threads = values.get("threads", "")
        rss = values.get("rss_kb", "")
        return {
            "success": True,
            "pid": pid,
            "state": state,
            "alive": state is not None and state not in ("Z", "X"),
            "ppid": int(ppid) if ppid.isdigit() else None,
            "command": values.get("command", ""),
            "cwd": values.get("cwd") or None,
            "threads": int(threads) if threads.isdigit() else None,
            "rss_kb": int(rss) if rss.isdigit() else None,
            "listening_ports": _parse_listen_ports(result["output"]),
        }


# ── Server registry ──────────────────────────────────────────────────────


@dataclass
class ServerRecord:
    name: str
    container_id: str
    port: int
    pid: Optional[int] = None
    command: str = ""
    log_file: str = ""
    started_at: float = field(default_factory=time.time)


def _background_script(
    command: str, args: list[str], env: Optional[dict[str, str]], log_file: str
) -> str:
    parts = [_format_export_line(k, v) + ";" for k, v in (env or {}).items()]
    line = " ".join([command, *(_sq(a) for a in args)])
    parts.append(f"nohup {line} > {_sq(log_file)} 2>&1 & echo $!")
    return " ".join(parts)


class ServerRegistry:
    """
    Named background processes started inside the sandbox.

    The registry is an advisory cache: nothing re-checks liveness between
    calls, and the container's process table stays the source of truth.
    Records are dropped when their container is torn down.
    """

    def __init__(
        self,
        manager: SandboxManager,
        resolver: PortResolver,
        controller: ProcessController,
    ):
        self._manager = manager
        self._resolver = resolver
        self._controller = controller
        self._records: dict[str, ServerRecord] = {}
        manager.add_teardown_listener(self.invalidate_container)

    async def start_server(
        self,
        command: str,
        port: int,
        args: Optional[list[str]] = None,
        env: Optional[dict[str, str]] = None,
        workdir: Optional[str] = None,
        name: Optional[str] = None,
    ) -> dict:
        args = list(args or [])
        server_name = name or f"server-{port}"
        if not _valid_port(port):
            return _failure(f"Invalid port: {port!r}", name=server_name)
        if not _SERVER_NAME_RE.match(server_name):
            return _failure(f"Invalid server name: {server_name!r}", name=server_name)
        bad = [k for k in (env or {}) if not _validate_env_key(k)]
        if bad:
            return _failure(f"Invalid env key(s): {', '.join(bad)}", name=server_name)

        try:
            state = await self._manager.require_active()
        except NoActiveSandbox as e:
            return _failure(str(e), name=server_name, reason=REASON_NO_SANDBOX)

        in_use = await self._resolver.find_pids_by_port(port)
        if in_use["success"] and in_use["pids"]:
            return _failure(
                f"Port {port} is already in use",
                name=server_name,
                port=port,
                pids=in_use["pids"],
                reason=REASON_PORT_CONFLICT,
            )

        if server_name in self._records:
            return _failure(
                f"Server {server_name} is already running",
                name=server_name,
                port=self._records[server_name].port,
            )

        log_file = f"{SERVER_LOG_DIR}/{server_name}.log"
        record = ServerRecord(
            name=server_name,
            container_id=state.container_id,
            port=port,
            command=" ".join([command, *args])[:200],
            log_file=log_file,
        )
        # Reserve the name before the first suspension point
        self._records[server_name] = record

        try:
            result = await self._manager.sh(
                _background_script(command, args, env, log_file),
                workdir=workdir or CONTAINER_WORKSPACE,
                container_id=state.container_id,
            )
        except (ContainerEngineError, ConfigurationError) as e:
            self._discard(record)
            return _failure(f"Failed to start server: {e}", name=server_name, port=port)

        lines = result["output"].strip().splitlines()
        pid_text = lines[-1].strip() if lines else ""
        if not pid_text.isdigit():
            self._discard(record)
            return _failure(
                "Failed to start server - could not get process ID",
                name=server_name,
                port=port,
                output=result["output"],
            )
        record.pid = int(pid_text)

        await asyncio.sleep(SERVER_START_GRACE)
        try:
            alive = await self._controller.is_alive(record.pid, container_id=state.container_id)
        except ContainerEngineError as e:
            log.warning(f"Could not verify server {server_name}: {e}")
            alive = False

        if not alive:
            self._discard(record)
            tail = await self._tail(state.container_id, log_file, SERVER_LOG_TAIL)
            log.warning(f"Server {server_name} (pid {record.pid}) exited during startup")
            return _failure(
                tail.strip() or "Process exited during startup without output",
                message="Server failed to start",
                name=server_name,
                port=port,
                pid=record.pid,
                log_file=log_file,
                reason=REASON_LAUNCH_FAILED,
            )

        log.info(f"Server {server_name} started on port {port} (pid {record.pid})")
        return {
            "success": True,
            "message": f"Server {server_name} started successfully",
            "name": server_name,
            "port": port,
            "pid": record.pid,
            "log_file": log_file,
        }

    def _discard(self, record: ServerRecord):
        if self._records.get(record.name) is record:
            del self._records[record.name]

    async def _tail(self, container_id: str, log_file: str, lines: int) -> str:
        try:
            result = await self._manager.exec(
                ["tail", "-n", str(lines), log_file], container_id=container_id
            )
        except ContainerEngineError as e:
            return f"(could not read {log_file}: {e})"
        return result["output"]

    async def stop_server(
        self, name: Optional[str] = None, port: Optional[int] = None
    ) -> dict:
        server_name = name
        if not server_name and port:
            server_name = next(
                (n for n, r in self._records.items() if r.port == port), None
            )
            if server_name is None:
                return _failure(f"No tracked server on port {port}", port=port)
        if not server_name:
            return _failure("No server name or port specified")

        record = self._records.get(server_name)
        if record is None:
            return _failure(f"Server {server_name} is not running", name=server_name)

        warning = None
        if record.pid is not None:
            killed = await self._controller.kill_pid(
                record.pid, "TERM", container_id=record.container_id
            )
            if not killed["success"]:
                warning = killed.get("error") or "kill failed"
        self._discard(record)

        if warning:
            log.info(f"Server {server_name} dropped; kill reported: {warning}")
            return {
                "success": True,
                "message": f"Server {server_name} stopped (process may have already exited)",
                "name": server_name,
                "warning": warning,
            }
        log.info(f"Server {server_name} stopped")
        return {
            "success": True,
            "message": f"Server {server_name} stopped successfully",
            "name": server_name,
        }

    def list_servers(self) -> dict:
        now = time.time()
        servers = [
            {
                "name": r.name,
                "port": r.port,
                "pid": r.pid,
                "container_id": r.container_id,
                "command": r.command,
                "log_file": r.log_file,
                "uptime": f"{now - r.started_at:.0f}s",
            }
            for r in self._records.values()
        ]
        return {"success": True, "servers": servers, "count": len(servers)}

    async def get_server_logs(self, name: str, lines: int = 50) -> dict:
        record = self._records.get(name)
        if record is None:
            return _failure(f"Server {name} is not running", name=name)
        try:
            result = await self._manager.exec(
                ["tail", "-n", str(max(1, int(lines))), record.log_file],
                container_id=record.container_id,
            )
        except (ContainerEngineError, ConfigurationError) as e:
            return _failure(f"Failed to get logs for {name}: {e}", name=name)
        return {"success": True, "logs": _truncate(result["output"]), "name": name}

    def find_by_pid(self, pid: int) -> Optional[ServerRecord]:
        return next((r for r in self._records.values() if r.pid == pid), None)

    def invalidate_container(self, container_id: str):
        stale = [n for n, r in self._records.items() if r.container_id == container_id]
        for n in stale:
            del self._records[n]
        if stale:
            log.info(f"Dropped {len(stale)} server record(s) for {_short(container_id)}")


# ── Workspace search ─────────────────────────────────────────────────────


def _parse_grep_output(text: str) -> list[dict]:
    matches = []
    for raw in text.splitlines():
        line = raw.strip()
        file, sep1, rest = line.partition(":")
        line_no, sep2, body = rest.partition(":")
        if not sep1 or not sep2 or not line_no.isdigit():
            continue
        matches.append({"file": file, "line": int(line_no), "text": body.strip()})
    return matches


class WorkspaceSearch:
    def __init__(self, manager: SandboxManager):
        self._manager = manager

    async def grep(
        self,
        pattern: str,
        path: str = ".",
        ignore_case: bool = False,
        max_results: int = GREP_MAX_RESULTS,
    ) -> dict:
        """Recursive grep under the workspace: line numbers, binaries skipped."""
        flags = ["-R", "-n", "-I"]
        if ignore_case:
            flags.append("-i")
        grep_cmd = (
            f"grep {' '.join(flags)} -- {_sq(pattern)} {_sq(path or '.')} "
            f"| head -n {max(1, int(max_results))}"
        )
        script = f"command -v grep >/dev/null 2>&1 || exit 127; {grep_cmd}"
        try:
            result = await _run_tool(
                self._manager, script, "grep", workdir=CONTAINER_WORKSPACE
            )
        except NoActiveSandbox as e:
            return _failure(str(e), count=0, command=grep_cmd, reason=REASON_NO_SANDBOX)
        except (ToolUnavailable, ContainerEngineError) as e:
            return _failure(str(e), count=0, command=grep_cmd)

        matches = _parse_grep_output(result["output"])
        response: dict[str, Any] = {
            "success": True,
            "count": len(matches),
            "matches": matches,
            "command": grep_cmd,
        }
        if not matches:
            response["raw"] = _truncate(result["output"])
        return response


# ── Wiring ───────────────────────────────────────────────────────────────


@dataclass
class SandboxServices:
    manager: SandboxManager
    executor: CommandExecutor
    resolver: PortResolver
    controller: ProcessController
    registry: ServerRegistry
    search: WorkspaceSearch

    @classmethod
    def create(cls, runtime: Optional[ContainerRuntime] = None) -> "SandboxServices":
        manager = SandboxManager(runtime)
        resolver = PortResolver(manager)
        controller = ProcessController(manager, resolver)
        return cls(
            manager=manager,
            executor=CommandExecutor(manager),
            resolver=resolver,
            controller=controller,
            registry=ServerRegistry(manager, resolver, controller),
            search=WorkspaceSearch(manager),
        )


# ── MCP Server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "agent-sandbox",
    instructions=(
        "You have one disposable Linux sandbox container with a persistent workspace "
        f"mounted at {CONTAINER_WORKSPACE}. Use sandbox_launch first (runtime 'node' or "
        "'python'), sandbox_switch to change runtime (only the workspace survives), "
        "and sandbox_shutdown to remove it. Use exec_command to run commands with a "
        "timeout. Use server_start/server_stop/server_list/server_logs for long-running "
        "servers. If a port is busy, exec_find_pids_by_port shows who holds it and "
        "exec_free_port reclaims it (TERM, then KILL). exec_kill_pid signals one pid. "
        "exec_grep searches the workspace; exec_list_processes and exec_process_info "
        "inspect the process table. Every tool returns a result with 'success'."
    ),
)

services = SandboxServices.create()


def _safe_tool(fn):
    """Fold any exception into a structured failure so tools never raise."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except ConfigurationError as e:
            return _failure(str(e), reason=REASON_CONFIGURATION)
        except NoActiveSandbox as e:
            return _failure(str(e), reason=REASON_NO_SANDBOX)
        except (ValueError, ContainerEngineError) as e:
            return _failure(str(e))
        except Exception as e:
            log.exception(f"Tool {fn.__name__} failed")
            return _failure(f"{type(e).__name__}: {e}")

    return wrapper


# ── Sandbox tools ────────────────────────────────────────────────────────


@mcp_server.tool()
@_safe_tool
async def sandbox_launch(
    runtime: str = "",
    host_volume_path: str = "",
    reuse_container_id: str = "",
) -> dict[str, Any]:
    """
    Launch the sandbox container (or adopt an existing one).

    Args:
        runtime: Runtime kind selecting the base image ("node" or "python")
        host_volume_path: Host directory bind-mounted at the container workspace
            (default: $SANDBOX_HOST_VOLUME)
        reuse_container_id: Adopt this running container instead of creating one

    Returns:
        The active sandbox: container id, runtime kind and paths.
    """
    path = host_volume_path or os.environ.get("SANDBOX_HOST_VOLUME", "")
    if not path:
        return _failure("host_volume_path is required (or set SANDBOX_HOST_VOLUME)")
    state = await services.manager.launch(
        runtime or DEFAULT_RUNTIME, path, reuse_container_id or None
    )
    return {"success": True, **state.describe()}


@mcp_server.tool()
@_safe_tool
async def sandbox_info() -> dict[str, Any]:
    """Show the active sandbox's runtime kind and container id."""
    info = services.manager.info()
    if info is None:
        return _failure("No active sandbox container", reason=REASON_NO_SANDBOX)
    return {"success": True, **info}


@mcp_server.tool()
@_safe_tool
async def sandbox_switch(runtime: str, host_volume_path: str = "") -> dict[str, Any]:
    """
    Switch the sandbox to another runtime kind.

    Tears the container down and relaunches it on the same host volume.
    Only files in the workspace survive; background servers are lost.

    Args:
        runtime: Target runtime kind ("node" or "python")
        host_volume_path: Host directory to use when no sandbox is active
    """
    state, switched = await services.manager.switch_runtime(
        runtime, host_volume_path or None
    )
    return {
        "success": True,
        "container_id": state.container_id,
        "runtime_kind": state.runtime_kind,
        "switched": switched,
    }


@mcp_server.tool()
@_safe_tool
async def sandbox_shutdown() -> dict[str, Any]:
    """Stop and remove the active sandbox container."""
    result = await services.manager.shutdown()
    return {"success": True, **result}


@mcp_server.tool()
@_safe_tool
async def engine_status() -> dict[str, Any]:
    """Check the container engine connection and list local images."""
    ping = await services.manager.runtime.ping()
    images = await services.manager.runtime.list_images()
    return {"success": True, **ping, "images": images}


# ── Execution tools ──────────────────────────────────────────────────────


@mcp_server.tool()
@_safe_tool
async def exec_command(
    command: str,
    args: Optional[list[str]] = None,
    workdir: str = "",
    env: Optional[dict[str, str]] = None,
    timeout_ms: int = DEFAULT_EXEC_TIMEOUT_MS,
) -> dict[str, Any]:
    """
    Execute a command inside the sandbox.

    Args:
        command: Program to run (e.g. "npm", "python", "ls")
        args: Arguments passed to the program
        workdir: Working directory (default: the workspace)
        env: Extra environment variables for this command
        timeout_ms: Wall-clock limit in milliseconds (default 30000)

    Returns:
        success, combined stdout/stderr output, exit code and duration.
    """
    return await services.executor.execute(
        command, args=args, workdir=workdir or None, env=env, timeout_ms=timeout_ms
    )


@mcp_server.tool()
@_safe_tool
async def exec_find_pids_by_port(port: int) -> dict[str, Any]:
    """Find process IDs listening on a TCP port inside the sandbox."""
    return await services.resolver.find_pids_by_port(port)


@mcp_server.tool()
@_safe_tool
async def exec_kill_pid(pid: int, signal: str = "TERM") -> dict[str, Any]:
    """Send a signal (default TERM) to a pid inside the sandbox."""
    return await services.controller.kill_pid(pid, signal)


@mcp_server.tool()
@_safe_tool
async def exec_free_port(port: int, timeout_ms: int = FREE_PORT_TIMEOUT_MS) -> dict[str, Any]:
    """
    Free a TCP port by terminating the processes bound to it.

    Sends TERM, waits up to timeout_ms for the port to clear, then KILLs
    whatever is left and checks again.
    """
    return await services.controller.free_port(port, timeout_ms)


@mcp_server.tool()
@_safe_tool
async def exec_grep(
    pattern: str,
    path: str = ".",
    ignore_case: bool = False,
    max_results: int = GREP_MAX_RESULTS,
) -> dict[str, Any]:
    """
    Search the sandbox workspace with grep (recursive, line numbers, skips binaries).

    Args:
        pattern: Regular expression to search for
        path: File or directory relative to the workspace (default ".")
        ignore_case: Case-insensitive match
        max_results: Maximum matching lines returned (default 200)
    """
    return await services.search.grep(pattern, path, ignore_case, max_results)


@mcp_server.tool()
@_safe_tool
async def exec_list_processes() -> dict[str, Any]:
    """List all running processes in the sandbox."""
    return await services.controller.list_processes()


@mcp_server.tool()
@_safe_tool
async def exec_process_info(pid: int) -> dict[str, Any]:
    """Show state, parent, command line and working directory of a pid."""
    info = await services.controller.get_process_info(pid)
    record = services.registry.find_by_pid(pid)
    if record is not None:
        info["server"] = record.name
        info["log_file"] = record.log_file
    return info


# ── Server tools ─────────────────────────────────────────────────────────


@mcp_server.tool()
@_safe_tool
async def server_start(
    command: str,
    port: int,
    args: Optional[list[str]] = None,
    env: Optional[dict[str, str]] = None,
    workdir: str = "",
    name: str = "",
) -> dict[str, Any]:
    """
    Start a long-running server in the background inside the sandbox.

    Fails without launching anything if the port is already taken.

    Args:
        command: Program to run (e.g. "python3")
        port: Port the server will listen on
        args: Arguments for the program (e.g. ["-m", "http.server", "8000"])
        env: Environment variables exported for the server
        workdir: Working directory (default: the workspace)
        name: Logical name (default "server-<port>")

    Returns:
        Name, pid and log file on success; the log tail if it died at startup.
    """
    return await services.registry.start_server(
        command,
        port,
        args=args,
        env=env,
        workdir=workdir or None,
        name=name or None,
    )


@mcp_server.tool()
@_safe_tool
async def server_stop(name: str = "", port: int = 0) -> dict[str, Any]:
    """Stop a tracked server by name or by port."""
    return await services.registry.stop_server(name or None, port or None)


@mcp_server.tool()
@_safe_tool
async def server_list() -> dict[str, Any]:
    """List tracked background servers."""
    return services.registry.list_servers()


@mcp_server.tool()
@_safe_tool
async def server_logs(name: str, lines: int = 50) -> dict[str, Any]:
    """Show the last lines of a tracked server's log file."""
    return await services.registry.get_server_logs(name, lines)


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
