"""
Modal implementation of the sandbox handle.

The gateway runs in a named Modal Sandbox so that every web worker resolves
the same container. Processes are launched detached, each with a run
directory under ``RUN_ROOT`` holding its command, pid, output and exit code.
Any worker can therefore list, poll, read and kill processes started by any
other worker, even after the worker that started them went away.
"""

import asyncio
import base64
import time
import uuid
from dataclasses import dataclass

import modal
from modal.exception import AlreadyExistsError, NotFoundError

from ..config import (
    APP_NAME,
    GATEWAY_PORT,
    SANDBOX_MAX_LIFETIME,
    SandboxOptions,
    StorageCredentials,
)
from ..log_config import get_logger
from .types import ProcessLogs, ProcessStatus, StorageError, status_from_exit_code

RUN_ROOT = "/tmp/sandbox-gateway/procs"
S3FS_PASSWD_FILE = "/etc/passwd-s3fs"
PORT_CHECK_TIMEOUT = 2

_LAUNCH_SCRIPT = """
set -e
dir="$1/$2"
mkdir -p "$dir"
printf '%s' "$3" > "$dir/cmd"
date +%s.%N > "$dir/started"
setsid bash -c 'eval "$1"; echo $? > "$2/exit"' gateway-proc "$3" "$dir" \
    > "$dir/stdout" 2> "$dir/stderr" < /dev/null &
echo $! > "$dir/pid"
"""

_STATUS_SCRIPT = """
dir="$1"
if [ -f "$dir/exit" ]; then
    echo "exited $(cat "$dir/exit")"
elif [ ! -f "$dir/pid" ]; then
    echo pending
else
    state=$(ps -o stat= -p "$(cat "$dir/pid")" 2>/dev/null)
    case "$state" in
        ""|Z*) echo lost ;;
        *) echo running ;;
    esac
fi
"""

_LIST_SCRIPT = """
for dir in "$1"/*/; do
    [ -f "${dir}cmd" ] || continue
    printf '%s\\t%s\\t%s\\n' "$(basename "$dir")" \
        "$(cat "${dir}started" 2>/dev/null || echo 0)" \
        "$(base64 -w0 < "${dir}cmd")"
done
"""

_LOGS_SCRIPT = """
[ -f "$1/stdout" ] && cat "$1/stdout"
[ -f "$1/stderr" ] && cat "$1/stderr" >&2
true
"""

_KILL_SCRIPT = """
pid=$(cat "$1/pid")
kill -TERM -- "-$pid" 2>/dev/null || kill -TERM "$pid"
"""

_MOUNT_SCRIPT = """
set -e
printf '%s:%s' "$R2_ACCESS_KEY_ID" "$R2_SECRET_ACCESS_KEY" > "$4"
chmod 600 "$4"
mkdir -p "$2"
s3fs "$1" "$2" -o passwd_file="$4" -o url="$3" -o use_path_request_style -o nonempty
"""


@dataclass(frozen=True)
class ExecOutput:
    exit_code: int
    stdout: str
    stderr: str


class ModalProcess:
    """A detached process inside a :class:`ModalSandbox`."""

    def __init__(self, sandbox: "ModalSandbox", process_id: str, command: str, started_at: float):
        self.id = process_id
        self.command = command
        self.started_at = started_at
        self._sandbox = sandbox
        self._status = ProcessStatus.PENDING
        self._exit_code: int | None = None

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def run_dir(self) -> str:
        return f"{RUN_ROOT}/{self.id}"

    async def refresh(self) -> ProcessStatus:
        if self._status.is_terminal:
            return self._status

        result = await self._sandbox.exec_script(_STATUS_SCRIPT, self.run_dir)
        state = result.stdout.strip()
        if state.startswith("exited"):
            try:
                self._exit_code = int(state.split()[1])
                self._status = status_from_exit_code(self._exit_code)
            except (IndexError, ValueError):
                self._status = ProcessStatus.FAILED
        elif state == "running":
            self._status = ProcessStatus.RUNNING
        elif state == "lost":
            # Killed by a signal before it could record an exit code
            self._status = ProcessStatus.FAILED
        else:
            self._status = ProcessStatus.PENDING
        return self._status

    async def get_logs(self) -> ProcessLogs:
        result = await self._sandbox.exec_script(_LOGS_SCRIPT, self.run_dir)
        return ProcessLogs(stdout=result.stdout, stderr=result.stderr)

    async def kill(self) -> None:
        result = await self._sandbox.exec_script(_KILL_SCRIPT, self.run_dir)
        if result.exit_code != 0:
            raise RuntimeError(f"kill failed for process {self.id}: {result.stderr.strip()}")


class ModalSandbox:
    """Sandbox handle backed by a running ``modal.Sandbox``."""

    def __init__(self, name: str, sandbox: modal.Sandbox):
        self.name = name
        self._sandbox = sandbox
        self._tunnel_urls: dict[int, str] = {}
        self.log = get_logger("modal_sandbox", sandbox_name=name)

    @property
    def object_id(self) -> str:
        return self._sandbox.object_id

    async def is_alive(self) -> bool:
        return await self._sandbox.poll.aio() is None

    async def exec_script(
        self,
        script: str,
        *args: str,
        env: dict[str, str] | None = None,
    ) -> ExecOutput:
        """Run a bash script in the container and wait for it to finish."""
        secrets = [modal.Secret.from_dict(env)] if env else []
        proc = await self._sandbox.exec.aio(
            "bash", "-c", script, "sandbox-gateway", *args, secrets=secrets
        )
        stdout = await proc.stdout.read.aio()
        stderr = await proc.stderr.read.aio()
        exit_code = await proc.wait.aio()
        return ExecOutput(exit_code=exit_code, stdout=stdout, stderr=stderr)

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> ModalProcess:
        process_id = uuid.uuid4().hex[:16]
        result = await self.exec_script(_LAUNCH_SCRIPT, RUN_ROOT, process_id, command, env=env)
        if result.exit_code != 0:
            raise RuntimeError(
                f"Failed to launch process (exit {result.exit_code}): {result.stderr.strip()}"
            )
        self.log.debug("process.launched", process_id=process_id, command=command)
        return ModalProcess(self, process_id, command, started_at=time.time())

    async def list_processes(self) -> list[ModalProcess]:
        result = await self.exec_script(_LIST_SCRIPT, RUN_ROOT)
        processes = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) != 3:
                continue
            process_id, started, encoded_cmd = parts
            try:
                command = base64.b64decode(encoded_cmd).decode()
                started_at = float(started)
            except ValueError:
                self.log.warn("process.list_parse_error", line=line)
                continue
            processes.append(ModalProcess(self, process_id, command, started_at))
        return processes

    async def remove_process(self, proc: ModalProcess) -> None:
        result = await self.exec_script('rm -rf -- "$1"', proc.run_dir)
        if result.exit_code != 0:
            raise RuntimeError(f"Failed to remove process {proc.id}: {result.stderr.strip()}")

    async def is_port_open(self, port: int) -> bool:
        result = await self.exec_script(
            f'timeout {PORT_CHECK_TIMEOUT} bash -c \'exec 3<>"/dev/tcp/127.0.0.1/$0"\' "$1"',
            str(port),
        )
        return result.exit_code == 0

    async def http_url(self, port: int) -> str:
        url = self._tunnel_urls.get(port)
        if url is None:
            tunnels = await self._sandbox.tunnels.aio()
            if port not in tunnels:
                raise RuntimeError(f"No tunnel exposed for port {port}")
            url = tunnels[port].url
            self._tunnel_urls[port] = url
        return url

    async def ws_url(self, port: int) -> str:
        url = await self.http_url(port)
        return url.replace("https://", "wss://").replace("http://", "ws://")

    async def is_mounted(self, mount_path: str) -> bool:
        result = await self.exec_script('mountpoint -q "$1"', mount_path)
        return result.exit_code == 0

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        credentials: StorageCredentials,
    ) -> None:
        try:
            result = await self.exec_script(
                _MOUNT_SCRIPT,
                bucket,
                mount_path,
                credentials.endpoint_url,
                S3FS_PASSWD_FILE,
                env={
                    "R2_ACCESS_KEY_ID": credentials.access_key_id or "",
                    "R2_SECRET_ACCESS_KEY": credentials.secret_access_key or "",
                },
            )
        except Exception as e:
            raise StorageError(f"mount command could not be run: {e}") from e
        if result.exit_code != 0:
            raise StorageError(
                f"s3fs exited with {result.exit_code}: {(result.stderr or result.stdout).strip()}"
            )


class ModalSandboxProvider:
    """
    Resolves named Modal sandboxes, creating them on first use.

    A sandbox that has exited (for example after its idle timeout) is
    dropped from the cache and materialized again on the next request.
    """

    def __init__(
        self,
        image: modal.Image,
        options: SandboxOptions,
        app_name: str = APP_NAME,
        cpu: float = 1.0,
        memory: int = 4096,
    ):
        self._image = image
        self._options = options
        self._app_name = app_name
        self._cpu = cpu
        self._memory = memory
        self._handles: dict[str, ModalSandbox] = {}
        self._lock = asyncio.Lock()
        self.log = get_logger("sandbox_provider", app_name=app_name)

    async def get(self, name: str) -> ModalSandbox:
        async with self._lock:
            handle = self._handles.get(name)
            if handle is not None:
                if await handle.is_alive():
                    return handle
                self.log.info("sandbox.expired", sandbox_name=name, object_id=handle.object_id)
                del self._handles[name]

            sandbox = await self._lookup_or_create(name)
            handle = ModalSandbox(name, sandbox)
            self._handles[name] = handle
            return handle

    async def lookup(self, name: str) -> ModalSandbox | None:
        async with self._lock:
            handle = self._handles.get(name)
            if handle is not None and await handle.is_alive():
                return handle
            try:
                sandbox = await modal.Sandbox.from_name.aio(self._app_name, name)
            except NotFoundError:
                self._handles.pop(name, None)
                return None
            handle = ModalSandbox(name, sandbox)
            self._handles[name] = handle
            return handle

    async def _lookup_or_create(self, name: str) -> modal.Sandbox:
        try:
            sandbox = await modal.Sandbox.from_name.aio(self._app_name, name)
            self.log.debug("sandbox.found", sandbox_name=name, object_id=sandbox.object_id)
            return sandbox
        except NotFoundError:
            pass

        start_time = time.time()
        app = await modal.App.lookup.aio(self._app_name, create_if_missing=True)
        kwargs = {
            "app": app,
            "image": self._image,
            "name": name,
            "encrypted_ports": [GATEWAY_PORT],
            "cpu": self._cpu,
            "memory": self._memory,
            "timeout": SANDBOX_MAX_LIFETIME,
        }
        if not self._options.keep_alive and self._options.idle_timeout:
            kwargs["idle_timeout"] = int(self._options.idle_timeout)

        try:
            sandbox = await modal.Sandbox.create.aio("sleep", "infinity", **kwargs)
        except AlreadyExistsError:
            # Another worker created it between our lookup and create
            self.log.info("sandbox.create_race", sandbox_name=name)
            return await modal.Sandbox.from_name.aio(self._app_name, name)

        self.log.info(
            "sandbox.created",
            sandbox_name=name,
            object_id=sandbox.object_id,
            keep_alive=self._options.keep_alive,
            idle_timeout=self._options.idle_timeout,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return sandbox
