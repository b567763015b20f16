from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from subprocess import DEVNULL, PIPE, CompletedProcess, Popen, TimeoutExpired, run
from typing import IO, Any

import psutil

from stackharness.errors import BinaryNotFoundError, CommandError, ServiceStartError
from stackharness.logging_config import get_logger

log = get_logger(__name__)


class StopOutcome(StrEnum):
    ALREADY_EXITED = "already_exited"
    EXITED = "exited"
    FORCE_KILLED = "force_killed"
    UNKILLABLE = "unkillable"


def _stderr_reader_thread(stderr_pipe: IO[bytes], service: str, pid: int) -> None:
    try:
        for line in iter(stderr_pipe.readline, b""):
            if line:
                log.debug(
                    "Server stderr output",
                    service=service,
                    pid=pid,
                    line=line.decode("utf-8", errors="replace").rstrip(),
                )
    except Exception:
        log.exception("Error reading stderr from process", service=service, pid=pid)
    finally:
        stderr_pipe.close()


def run_tool(
    args: list[str],
    env: Mapping[str, str] | None = None,
    timeout: float = 60.0,
    input: bytes | None = None,
) -> CompletedProcess[bytes]:
    """Run a short-lived client tool (initdb, psql, redis-cli, mc) to completion."""
    try:
        return run(
            args,
            input=input,
            capture_output=True,
            env=dict(env) if env is not None else None,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise BinaryNotFoundError(args[0]) from e
    except PermissionError as e:
        raise BinaryNotFoundError(args[0], "binary is not executable") from e
    except TimeoutExpired as e:
        raise CommandError(Path(args[0]).name, f"timed out after {timeout}s") from e


def decode(output: bytes) -> str:
    return output.decode("utf-8", errors="replace").strip()


class Process:
    # ============================================================================
    # Initialization
    # ============================================================================

    def __init__(self, popen: Popen[bytes]):
        self._popen = popen
        self._proc = psutil.Process(popen.pid)

    @staticmethod
    def spawn(
        args: list[str],
        service: str,
        env: Mapping[str, str] | None = None,
        log_file: Path | None = None,
        stream_stderr: bool = False,
    ) -> Process:
        """Start ``args`` as a child in its own session.

        Output goes to ``log_file`` when given, otherwise it is discarded or,
        with ``stream_stderr``, forwarded line by line to the log.
        """
        stdout: Any = DEVNULL
        stderr: Any = PIPE if stream_stderr else DEVNULL
        log_handle = None
        if log_file is not None:
            log_handle = log_file.open("ab")
            stdout = log_handle
            stderr = log_handle

        try:
            popen = Popen(
                args,
                stdin=DEVNULL,
                stdout=stdout,
                stderr=stderr,
                env=dict(env) if env is not None else None,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise BinaryNotFoundError(args[0]) from e
        except PermissionError as e:
            raise BinaryNotFoundError(args[0], "binary is not executable") from e
        except OSError as e:
            raise ServiceStartError(service, f"could not spawn {args[0]}: {e}") from e
        finally:
            # the child holds its own descriptor
            if log_handle is not None:
                log_handle.close()

        if stream_stderr and popen.stderr is not None:
            thread = threading.Thread(
                target=_stderr_reader_thread,
                args=(popen.stderr, service, popen.pid),
                daemon=True,
                name=f"stderr-reader-{service}-{popen.pid}",
            )
            thread.start()

        log.info("Spawned server process", service=service, pid=popen.pid, binary=args[0])
        return Process(popen)

    # ============================================================================
    # Properties
    # ============================================================================

    @property
    def pid(self) -> int:
        return self._popen.pid

    # ============================================================================
    # Status Checks
    # ============================================================================

    def is_running(self) -> bool:
        # poll() reaps our own child so it never lingers as a zombie
        if self._popen.poll() is not None:
            return False
        try:
            return self._proc.is_running() and self._proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def returncode(self) -> int | None:
        return self._popen.poll()

    # ============================================================================
    # Lifecycle Management
    # ============================================================================

    def terminate(self) -> None:
        try:
            self._proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    def kill(self) -> None:
        try:
            for child in self._proc.children(recursive=True):
                child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        try:
            self._proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    def wait_for_exit(self, attempts: int, poll_interval: float) -> bool:
        for _ in range(attempts):
            if not self.is_running():
                return True
            time.sleep(poll_interval)
        return not self.is_running()

    def stop(self, attempts: int = 50, poll_interval: float = 0.1, send_terminate: bool = True) -> StopOutcome:
        """Stop the process: terminate, poll for exit, then force-kill.

        ``send_terminate`` is False when the caller already asked the server to
        shut down through its own protocol and only the polling and escalation
        remain.
        """
        if not self.is_running():
            return StopOutcome.ALREADY_EXITED

        if send_terminate:
            self.terminate()

        if self.wait_for_exit(attempts, poll_interval):
            return StopOutcome.EXITED

        log.warning("Process ignored termination, killing", pid=self.pid, attempts=attempts)
        self.kill()

        if self.wait_for_exit(10, poll_interval):
            return StopOutcome.FORCE_KILLED

        return StopOutcome.UNKILLABLE
