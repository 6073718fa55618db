from __future__ import annotations

import asyncio
import json
import os
import re
from pathlib import Path

import pytest

import agent_sandbox_server as sm


# ── Fake docker CLI ──────────────────────────────────────────────────────

_FAKE_DOCKER_SCRIPT = """#!/usr/bin/env python3
import json
import os
import subprocess
import sys
import uuid


STATE_PATH = os.environ.get("FAKE_DOCKER_STATE")
if not STATE_PATH:
    print("FAKE_DOCKER_STATE is required", file=sys.stderr)
    sys.exit(2)

GLOBAL_VALUE_FLAGS = ("--host", "-H", "--tlscacert", "--tlscert", "--tlskey")
GLOBAL_BOOL_FLAGS = ("--tls", "--tlsverify")
CREATE_VALUE_FLAGS = ("--name", "--workdir", "--env", "--volume", "--publish", "--network")


def load_state():
    if os.path.exists(STATE_PATH):
        with open(STATE_PATH) as f:
            return json.load(f)
    return {"containers": {}, "images": [], "calls": [], "globals": []}


def save_state(state):
    with open(STATE_PATH, "w") as f:
        json.dump(state, f)


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)


def no_such_container(cid):
    die(f"Error response from daemon: No such container: {cid}")


def handle_create(args, state):
    info = {"name": "", "workdir": None, "volumes": [], "env": [], "running": False}
    i = 0
    while i < len(args):
        tok = args[i]
        if tok == "--tty":
            i += 1
            continue
        if tok in CREATE_VALUE_FLAGS:
            value = args[i + 1]
            if tok == "--name":
                info["name"] = value
            elif tok == "--workdir":
                info["workdir"] = value
            elif tok == "--volume":
                host, ctr = value.split(":")[:2]
                info["volumes"].append([host, ctr])
            elif tok == "--env":
                info["env"].append(value)
            i += 2
            continue
        break
    if i >= len(args):
        die("docker create requires an image")
    info["image"] = args[i]
    info["cmd"] = args[i + 1:]
    cid = uuid.uuid4().hex + uuid.uuid4().hex
    state["containers"][cid] = info
    save_state(state)
    print(cid)
    return 0


def host_workdir(info, workdir):
    for host, ctr in info["volumes"]:
        if workdir == ctr or workdir.startswith(ctr + "/"):
            return host + workdir[len(ctr):]
    return workdir


def handle_exec(args, state):
    workdir = None
    i = 0
    while i < len(args) and args[i].startswith("-"):
        if args[i] in ("--workdir", "-w"):
            workdir = args[i + 1]
            i += 2
            continue
        i += 1
    cid = args[i]
    cmd = args[i + 1:]
    info = state["containers"].get(cid)
    if info is None:
        no_such_container(cid)
    if not info["running"]:
        die(f"Error response from daemon: container {cid} is not running")
    cwd = host_workdir(info, workdir or info.get("workdir") or "/")
    if not os.path.isdir(cwd):
        print(f"OCI runtime exec failed: chdir to cwd ({workdir}): no such file or directory")
        return 126
    sys.stdout.flush()
    try:
        proc = subprocess.run(cmd, cwd=cwd)
    except FileNotFoundError:
        print(f'OCI runtime exec failed: exec: "{cmd[0]}": executable file not found in $PATH')
        return 127
    return proc.returncode


def main():
    argv = sys.argv[1:]
    state = load_state()
    flags = []
    while argv and (argv[0] in GLOBAL_VALUE_FLAGS or argv[0] in GLOBAL_BOOL_FLAGS):
        if argv[0] in GLOBAL_VALUE_FLAGS:
            flags.extend(argv[:2])
            argv = argv[2:]
        else:
            flags.append(argv[0])
            argv = argv[1:]
    if not argv:
        die("missing command")
    state["calls"].append(argv)
    state["globals"].append(flags)
    save_state(state)
    cmd, rest = argv[0], argv[1:]

    if cmd == "version":
        print(json.dumps({"Client": {"Version": "27.1.0"},
                          "Server": {"Version": "27.1.0", "ApiVersion": "1.46"}}))
        return 0

    if cmd == "image" and rest[:1] == ["inspect"]:
        if rest[1] in state["images"]:
            print(json.dumps([{"RepoTags": [rest[1]]}]))
            return 0
        die(f"Error: No such image: {rest[1]}")

    if cmd == "pull":
        print(f"Pulling from library/{rest[0]}")
        print("Digest: sha256:0000")
        state["images"].append(rest[0])
        save_state(state)
        return 0

    if cmd == "images":
        for image in state["images"]:
            print(image)
        return 0

    if cmd == "create":
        return handle_create(rest, state)

    if cmd == "start":
        cid = rest[0]
        if cid not in state["containers"]:
            no_such_container(cid)
        state["containers"][cid]["running"] = True
        save_state(state)
        print(cid)
        return 0

    if cmd == "inspect":
        cid = rest[0]
        info = state["containers"].get(cid)
        if info is None:
            no_such_container(cid)
        print(json.dumps([{
            "Id": cid,
            "Name": "/" + (info["name"] or cid[:12]),
            "State": {"Status": "running" if info["running"] else "created",
                      "Running": info["running"]},
            "Mounts": [{"Source": h, "Destination": c, "RW": True}
                       for h, c in info["volumes"]],
        }]))
        return 0

    if cmd == "stop":
        cid = rest[-1]
        if cid not in state["containers"]:
            no_such_container(cid)
        state["containers"][cid]["running"] = False
        save_state(state)
        print(cid)
        return 0

    if cmd == "rm":
        cid = rest[-1]
        if cid not in state["containers"]:
            no_such_container(cid)
        del state["containers"][cid]
        save_state(state)
        print(cid)
        return 0

    if cmd == "exec":
        return handle_exec(rest, state)

    die(f"unsupported command: {cmd}")


if __name__ == "__main__":
    sys.exit(main())
"""


def read_fake_state(state_file: Path) -> dict:
    if not state_file.exists():
        return {"containers": {}, "images": [], "calls": [], "globals": []}
    return json.loads(state_file.read_text())


@pytest.fixture
def mock_docker_cli(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    fake_docker = bin_dir / "docker"
    fake_docker.write_text(_FAKE_DOCKER_SCRIPT)
    fake_docker.chmod(0o755)

    state_file = tmp_path / "fake-docker-state.json"
    workspace_dir = tmp_path / "workspace"
    workspace_dir.mkdir()

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_DOCKER_STATE", str(state_file))
    monkeypatch.setenv("DOCKER_HOST", "unix:///var/run/docker.sock")
    monkeypatch.delenv("DOCKER_TLS_VERIFY", raising=False)
    monkeypatch.delenv("DOCKER_CERT_PATH", raising=False)

    return {
        "tmp_path": tmp_path,
        "state_file": state_file,
        "workspace_dir": workspace_dir,
    }


# ── In-process fake runtime ──────────────────────────────────────────────


_KILL_S_RE = re.compile(r"^kill -s (\w+) (\d+)$")
_KILL_DASH_RE = re.compile(r"^kill -(\w+) (\d+)$")
_NOHUP_RE = re.compile(r"nohup (.*?) > '([^']+)' 2>&1 & echo \$!")


class FakeContainer:
    """Scripted process table answering the shell snippets the server sends."""

    def __init__(self):
        # pid -> {"port": Optional[int], "command": str, "state": str}
        self.processes: dict[int, dict] = {}
        self.stubborn: set[int] = set()  # ignore TERM
        self.unkillable: set[int] = set()  # ignore KILL too
        self.tools = {"ss", "netstat", "proc", "ps", "grep"}
        self.ss_shows_pids = True
        self.kill_forms = {"-s", "-SIG"}
        self.binds: dict[str, int] = {}  # command substring -> port it listens on
        self.crashes: dict[str, str] = {}  # command substring -> log output
        self.logs: dict[str, str] = {}
        self.grep_output = ""
        self.signals: list[tuple[int, str]] = []
        self.scripts: list[str] = []
        self.next_pid = 300

    def add_listener(self, pid: int, port: int, command: str = "node server.js"):
        self.processes[pid] = {"port": port, "command": command, "state": "S"}

    def listeners(self, port: int) -> list[int]:
        return sorted(p for p, info in self.processes.items() if info["port"] == port)

    def run(self, cmd: list[str], workdir=None) -> dict:
        if cmd[:2] != ["sh", "-c"]:
            return self._argv(cmd)
        script = cmd[2]
        self.scripts.append(script)

        if script.startswith("d=/proc/"):
            return self._info(script)

        if "ss -lntp" in script:
            return self._ss()
        if "netstat -ltnp" in script:
            return self._netstat()
        if "/proc/net/tcp" in script:
            return self._proc(script)
        if "nohup " in script:
            return self._start(script)
        if "ps -eo" in script:
            return self._ps()
        if "stat" in script and "/proc/" in script:
            return self._state(script)
        if "grep -R" in script:
            if "grep" not in self.tools:
                return {"output": "", "exit_code": 127}
            return {"output": self.grep_output, "exit_code": 0}
        m = _KILL_S_RE.match(script)
        if m:
            return self._kill("-s", m.group(1), int(m.group(2)))
        m = _KILL_DASH_RE.match(script)
        if m:
            return self._kill("-SIG", m.group(1), int(m.group(2)))
        return {"output": "", "exit_code": 0}

    def _argv(self, cmd):
        if cmd[0] == "env":
            cmd = [c for c in cmd[1:] if "=" not in c or c.startswith("-")]
        if cmd[0] == "echo":
            return {"output": " ".join(cmd[1:]) + "\n", "exit_code": 0}
        if cmd[0] == "tail":
            path = cmd[-1]
            if path not in self.logs:
                return {
                    "output": f"tail: cannot open '{path}' for reading\n",
                    "exit_code": 1,
                }
            lines = self.logs[path].splitlines(keepends=True)
            return {"output": "".join(lines[-int(cmd[2]):]), "exit_code": 0}
        if cmd[0] == "false":
            return {"output": "", "exit_code": 1}
        return {"output": "", "exit_code": 0}

    def _ss(self):
        if "ss" not in self.tools:
            return {"output": "", "exit_code": 127}
        lines = ["State  Recv-Q Send-Q Local Address:Port Peer Address:Port Process"]
        for pid, info in sorted(self.processes.items()):
            if info["port"] is None:
                continue
            users = f' users:(("node",pid={pid},fd=19))' if self.ss_shows_pids else ""
            lines.append(
                f"LISTEN 0      511          0.0.0.0:{info['port']}      0.0.0.0:*{users}"
            )
        return {"output": "\n".join(lines) + "\n", "exit_code": 0}

    def _netstat(self):
        if "netstat" not in self.tools:
            return {"output": "", "exit_code": 127}
        lines = [
            "Active Internet connections (only servers)",
            "Proto Recv-Q Send-Q Local Address           Foreign Address         State       PID/Program name",
        ]
        for pid, info in sorted(self.processes.items()):
            if info["port"] is None:
                continue
            lines.append(
                f"tcp        0      0 0.0.0.0:{info['port']}            0.0.0.0:*               LISTEN      {pid}/node"
            )
        return {"output": "\n".join(lines) + "\n", "exit_code": 0}

    def _proc(self, script):
        if "proc" not in self.tools:
            return {"output": "", "exit_code": 127}
        m = re.search(r":([0-9A-F]{4})", script.split("awk", 1)[1])
        port = int(m.group(1), 16)
        return {"output": "".join(f"{p}\n" for p in self.listeners(port)), "exit_code": 0}

    def _kill(self, form, sig, pid):
        if form not in self.kill_forms:
            return {"output": "sh: kill: invalid option\n", "exit_code": 2}
        if pid not in self.processes:
            return {"output": f"sh: kill: ({pid}) - No such process\n", "exit_code": 1}
        self.signals.append((pid, sig))
        if sig in ("KILL", "9"):
            if pid not in self.unkillable:
                del self.processes[pid]
        elif pid not in self.stubborn and pid not in self.unkillable:
            del self.processes[pid]
        return {"output": "", "exit_code": 0}

    def _start(self, script):
        m = _NOHUP_RE.search(script)
        line, log_file = m.group(1), m.group(2)
        pid = self.next_pid
        self.next_pid += 1
        for needle, output in self.crashes.items():
            if needle in line:
                self.logs[log_file] = output
                return {"output": f"{pid}\n", "exit_code": 0}
        port = next((p for needle, p in self.binds.items() if needle in line), None)
        self.processes[pid] = {"port": port, "command": line, "state": "S"}
        self.logs[log_file] = f"started {line}\n"
        return {"output": f"{pid}\n", "exit_code": 0}

    def _state(self, script):
        pid = int(re.search(r"/proc/(\d+)/stat", script).group(1))
        info = self.processes.get(pid)
        return {"output": f"{info['state']}\n" if info else "", "exit_code": 0}

    def _ps(self):
        rows = [
            f"{pid:>5} {1:>5} {info['state']:<4} 00:42 {info['command']}"
            for pid, info in sorted(self.processes.items())
        ]
        if "ps" in self.tools:
            return {"output": "\n".join(rows) + "\n", "exit_code": 0}
        if "proc" in self.tools:
            rows = [
                f"{pid} 1 {info['state']} - {info['command']}"
                for pid, info in sorted(self.processes.items())
            ]
            return {"output": "\n".join(rows) + "\n", "exit_code": 0}
        return {"output": "", "exit_code": 127}

    def _info(self, script):
        pid = int(re.match(r"d=/proc/(\d+);", script).group(1))
        info = self.processes.get(pid)
        if info is None:
            return {"output": "", "exit_code": 3}
        return {
            "output": (
                f"state={info['state']}\nppid=1\ncommand={info['command']} \n"
                "cwd=/root/workspace\nthreads=4\nrss_kb=20480\n"
                + (f"listen=00000000:{info['port']:04X}\n" if info["port"] else "")
            ),
            "exit_code": 0,
        }


class FakeRuntime:
    """Stands in for ContainerRuntime; records every call."""

    def __init__(self, container: FakeContainer | None = None):
        self.container = container or FakeContainer()
        self.calls: list[tuple] = []
        self.removed: set[str] = set()
        self._counter = 0

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def start(self, image, cmd=None, workdir=None, env=None, volumes=None,
                    ports=None, network=None, name=None):
        self._counter += 1
        container_id = f"fake{self._counter:02d}" + "0" * 56
        self.calls.append(("start", image, tuple(cmd or ()), workdir,
                           tuple(v.to_arg() for v in volumes or ())))
        return {"id": container_id, "name": name or "", "state": {"Running": True}, "mounts": []}

    async def exec(self, container_id, cmd, workdir=None):
        self.calls.append(("exec", container_id, tuple(cmd), workdir))
        if container_id in self.removed:
            raise sm.ContainerEngineError(
                f"Error response from daemon: No such container: {container_id}"
            )
        if cmd[0] == "sleep":
            await asyncio.sleep(float(cmd[1]))
            return {"output": "", "exit_code": 0}
        return self.container.run(list(cmd), workdir)

    async def stop(self, container_id, remove=False):
        self.calls.append(("stop", container_id, remove))
        if remove:
            self.removed.add(container_id)
        return {"ok": True}

    async def pull_if_missing(self, image):
        return False

    async def list_images(self):
        return ["node:20-bullseye"]

    async def ping(self):
        return {"ok": True, "version": "fake", "api_version": "1.46"}


@pytest.fixture
def fast_timers(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(sm, "FREE_PORT_POLL_INTERVAL", 0.01)
    monkeypatch.setattr(sm, "SERVER_START_GRACE", 0.0)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


async def launched(runtime: FakeRuntime, tmp_path: Path, kind: str = "node") -> sm.SandboxServices:
    services = sm.SandboxServices.create(runtime)
    await services.manager.launch(kind, str(tmp_path / "ws"))
    return services
