from __future__ import annotations

import re
from pathlib import Path

from stackharness.errors import CommandError, fail_gracefully
from stackharness.logging_config import get_logger
from stackharness.service.protocols import ConnectionDescriptor, ServiceKind
from stackharness.service.service import Service, ServiceConfig
from stackharness.utils.executable import find_binary
from stackharness.utils.process import Process, StopOutcome, decode, run_tool

log = get_logger(__name__)

SEARCH_DIRS = ("/usr/bin", "/usr/local/bin", "/opt/homebrew/bin")
STACK_SUBDIR = "bin/cache"

# redis-cli --no-raw prints typed replies: strings are quoted, so only real
# error replies start with the error marker.
NIL_REPLY = "(nil)"
ERROR_MARKER = "(error)"
EMPTY_ARRAYS = ("(empty array)", "(empty list or set)")
ARRAY_ITEM = re.compile(r"^\s*\d+\) (.*)$")
ESCAPES = {"n": b"\n", "r": b"\r", "t": b"\t", "a": b"\a", "b": b"\b", '"': b'"', "\\": b"\\"}

SHUTDOWN_ATTEMPTS = 30
TERMINATE_ATTEMPTS = 20


def unquote(token: str) -> str:
    """Undo redis-cli's quoting of a bulk string, including ``\\xHH`` byte escapes."""
    if len(token) < 2 or not (token.startswith('"') and token.endswith('"')):
        return token

    body = token[1:-1]
    out = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 == len(body):
            out += ch.encode()
            i += 1
            continue

        nxt = body[i + 1]
        if nxt == "x" and re.fullmatch(r"[0-9a-fA-F]{2}", body[i + 2:i + 4]):
            out.append(int(body[i + 2:i + 4], 16))
            i += 4
        elif nxt in ESCAPES:
            out += ESCAPES[nxt]
            i += 2
        else:
            out += nxt.encode()
            i += 2

    return out.decode(errors="replace")


def parse_nil(reply: str) -> str | None:
    return None if reply == NIL_REPLY else unquote(reply)


def parse_int(reply: str) -> int:
    """Integer replies come back as ``(integer) N``; a bare ``N`` is accepted too."""
    value = reply.removeprefix("(integer)").strip()
    try:
        return int(value)
    except ValueError as e:
        raise CommandError("redis-cli", f"expected an integer reply, got {reply!r}") from e


def parse_list(reply: str) -> list[str]:
    if reply == "" or reply == NIL_REPLY or reply in EMPTY_ARRAYS:
        return []

    items = []
    for line in reply.splitlines():
        match = ARRAY_ITEM.match(line)
        items.append(unquote(match.group(1) if match else line))
    return items


def parse_hash(reply: str) -> dict[str, str]:
    items = parse_list(reply)
    return dict(zip(items[::2], items[1::2], strict=False))


class CacheService(Service):
    kind = ServiceKind.CACHE
    data_subdir = "redis"

    def __init__(
        self,
        port: int,
        work_dir: Path,
        config: ServiceConfig | None = None,
        password: str | None = None,
    ):
        super().__init__(port, work_dir, config)
        self.password = password

        self._server_bin: Path | None = None
        self._cli_bin: Path | None = None

    # ------------------
    # -- Installation --
    # ------------------
    def _find(self, name: str) -> Path:
        return find_binary(
            name,
            stack_path=self.config.stack_path,
            stack_subdir=STACK_SUBDIR,
            search_dirs=SEARCH_DIRS,
        )

    @property
    def server_bin(self) -> Path:
        if self._server_bin is None:
            self._server_bin = self._find("redis-server")
        return self._server_bin

    @property
    def cli_bin(self) -> Path:
        if self._cli_bin is None:
            self._cli_bin = self._find("redis-cli")
        return self._cli_bin

    # -------------------
    # -- Service hooks --
    # -------------------
    def _build_args(self) -> list[str]:
        args = [
            str(self.server_bin),
            "--port", str(self.port),
            "--bind", self.host,
            "--dir", str(self.data_dir),
            "--daemonize", "no",
            "--save", "",
            "--appendonly", "no",
            "--maxmemory", "64mb",
            "--maxmemory-policy", "allkeys-lru",
        ]
        if self.password:
            args += ["--requirepass", self.password]
        return args

    def _native_ready_check(self) -> bool:
        return self._cli("PING") == "PONG"

    def _stop_process(self, process: Process) -> StopOutcome:
        if not process.is_running():
            return StopOutcome.ALREADY_EXITED

        self._shutdown_nosave()
        if process.wait_for_exit(SHUTDOWN_ATTEMPTS, self.config.stop_poll_interval):
            return StopOutcome.EXITED

        log.warning("Cache ignored SHUTDOWN, escalating", pid=process.pid)
        return process.stop(attempts=TERMINATE_ATTEMPTS, poll_interval=self.config.stop_poll_interval)

    @fail_gracefully(log)
    def _shutdown_nosave(self) -> None:
        # the server closes the connection on shutdown so the exit status is meaningless
        self._cli("SHUTDOWN", "NOSAVE")

    # --------------
    # -- Commands --
    # --------------
    def _run_cli(self, *args: str):
        argv = [str(self.cli_bin), "-h", self.host, "-p", str(self.port), "--no-raw"]
        if self.password:
            argv += ["-a", self.password, "--no-auth-warning"]
        return run_tool([*argv, *args], timeout=10.0)

    def _cli(self, *args: str) -> str:
        return decode(self._run_cli(*args).stdout)

    def execute(self, *args: str) -> str:
        """Run one command through redis-cli and return its stripped reply.

        The reply is in redis-cli's typed form: bulk strings are quoted,
        integers read ``(integer) N`` and a missing value is ``(nil)``.
        Use the typed helpers below to get plain Python values back.
        """
        result = self._run_cli(*args)
        reply = decode(result.stdout)
        operation = f"redis-cli {args[0] if args else ''}".strip()
        if result.returncode != 0:
            raise CommandError(operation, decode(result.stderr) or reply)
        if reply.startswith(ERROR_MARKER):
            raise CommandError(operation, reply.removeprefix(ERROR_MARKER).strip())
        return reply

    def set(self, key: str, value: str) -> None:
        self.execute("SET", key, value)

    def setex(self, key: str, seconds: int, value: str) -> None:
        self.execute("SETEX", key, str(seconds), value)

    def get(self, key: str) -> str | None:
        return parse_nil(self.execute("GET", key))

    def delete(self, key: str) -> int:
        return parse_int(self.execute("DEL", key))

    def exists(self, key: str) -> bool:
        return parse_int(self.execute("EXISTS", key)) > 0

    def keys(self, pattern: str = "*") -> list[str]:
        return parse_list(self.execute("KEYS", pattern))

    def flushall(self) -> None:
        self.execute("FLUSHALL")

    def publish(self, channel: str, message: str) -> int:
        return parse_int(self.execute("PUBLISH", channel, message))

    def lpush(self, key: str, value: str) -> int:
        return parse_int(self.execute("LPUSH", key, value))

    def rpush(self, key: str, value: str) -> int:
        return parse_int(self.execute("RPUSH", key, value))

    def lpop(self, key: str) -> str | None:
        return parse_nil(self.execute("LPOP", key))

    def rpop(self, key: str) -> str | None:
        return parse_nil(self.execute("RPOP", key))

    def llen(self, key: str) -> int:
        return parse_int(self.execute("LLEN", key))

    def hset(self, key: str, field: str, value: str) -> int:
        return parse_int(self.execute("HSET", key, field, value))

    def hget(self, key: str, field: str) -> str | None:
        return parse_nil(self.execute("HGET", key, field))

    def hgetall(self, key: str) -> dict[str, str]:
        return parse_hash(self.execute("HGETALL", key))

    def incr(self, key: str) -> int:
        return parse_int(self.execute("INCR", key))

    def decr(self, key: str) -> int:
        return parse_int(self.execute("DECR", key))

    # -----------------
    # -- Descriptors --
    # -----------------
    def connection_url(self) -> str:
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}"
        return f"redis://{self.host}:{self.port}"

    def connection_descriptor(self) -> ConnectionDescriptor:
        extras = {"host": self.host, "port": str(self.port)}
        if self.password:
            extras["password"] = self.password
        return ConnectionDescriptor(kind=self.kind, url=self.connection_url(), extras=extras)
