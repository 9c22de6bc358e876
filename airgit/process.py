"""Running external commands (git, gh, the coding agent).

Every command is spawned in its own process group so a timeout or a
cancelled job can kill the whole tree the command started, not just the
direct child.
"""

import asyncio
import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from airgit.errors import CommandError, CommandNotFound, CommandTimeout

log = logging.getLogger("airgit.process")

# Agents can print very long lines (diffs, JSON); don't trip StreamReader's 64k default
STREAM_LIMIT = 1024 * 1024

PathLike = Union[str, Path]
LineCallback = Callable[[str, str], None]


@dataclass
class CommandResult:
    """Outcome of a finished command."""

    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stripped."""
        parts = [p.strip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)


@dataclass
class OutputBuffer:
    """Line buffer shared by the stdout and stderr reader tasks."""

    _lines: List[Tuple[str, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def append(self, stream: str, line: str) -> None:
        with self._lock:
            self._lines.append((stream, line))

    def lines(self, stream: Optional[str] = None) -> List[str]:
        with self._lock:
            return [line for name, line in self._lines if stream is None or name == stream]

    def text(self, stream: Optional[str] = None) -> str:
        return "\n".join(self.lines(stream))


def env_without(names: Iterable[str], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Copy of the environment with the given variables removed.

    Args:
        names: Variable names to drop
        base: Environment to copy (default: ``os.environ``)
    """
    drop = set(names)
    source = os.environ if base is None else base
    return {k: v for k, v in source.items() if k not in drop}


def _format_argv(argv: Sequence[str]) -> str:
    return " ".join(argv)


async def _spawn(
    argv: List[str],
    cwd: Optional[PathLike],
    env: Optional[Mapping[str, str]],
    with_stdin: bool,
) -> asyncio.subprocess.Process:
    log.debug("$ %s (cwd=%s)", _format_argv(argv), cwd)
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.PIPE if with_stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=STREAM_LIMIT,
        )
    except FileNotFoundError as e:
        raise CommandNotFound(argv, f"not found ({e.filename or argv[0]})") from e
    except PermissionError as e:
        raise CommandNotFound(argv, "permission denied") from e
    except NotADirectoryError as e:
        raise CommandNotFound(argv, f"invalid working directory {cwd}") from e


def kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the process group started for ``proc``."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except (AttributeError, PermissionError):
        # No process groups on this platform or not ours to kill
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def _terminate(proc: asyncio.subprocess.Process, argv: Sequence[str]) -> None:
    log.warning("Killing %s (pid %s)", argv[0], proc.pid)
    kill_process_tree(proc)
    await proc.wait()


async def run_command(
    program: str,
    args: Sequence[str],
    cwd: Optional[PathLike] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    check: bool = True,
) -> CommandResult:
    """Run a command to completion and capture its output.

    Args:
        program: Executable name or path
        args: Arguments
        cwd: Working directory
        env: Full replacement environment (default: inherit)
        timeout: Seconds before the process tree is killed
        input_text: Text written to stdin
        check: Raise CommandError on a non-zero exit

    Returns:
        CommandResult

    Raises:
        CommandNotFound: If the process could not be spawned
        CommandTimeout: If the deadline passed
        CommandError: If check is True and the command failed
    """
    argv = [program, *args]
    proc = await _spawn(argv, cwd, env, with_stdin=input_text is not None)
    data = input_text.encode("utf-8") if input_text is not None else None

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(data), timeout)
    except asyncio.TimeoutError:
        raise CommandTimeout(argv, timeout or 0) from None
    finally:
        if proc.returncode is None:
            await _terminate(proc, argv)

    result = CommandResult(
        argv=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    if not result.ok:
        # Without check a non-zero exit is an answer (e.g. diff --quiet), not a failure
        level = logging.WARNING if check else logging.DEBUG
        log.log(level, "%s failed (%s): %s", _format_argv(argv), result.returncode, result.output)
        if check:
            raise CommandError(argv, result.returncode, result.output)
    return result


async def stream_command(
    program: str,
    args: Sequence[str],
    cwd: Optional[PathLike] = None,
    on_line: Optional[LineCallback] = None,
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
    timeout: Optional[float] = None,
    check: bool = True,
) -> CommandResult:
    """Run a command while reading stdout and stderr line by line.

    Two reader tasks run concurrently and append to a shared OutputBuffer;
    ``on_line(stream_name, line)`` is called for every line as it arrives.
    Stdin receives ``input_text`` and is then closed.

    Raises:
        CommandNotFound: If the process could not be spawned
        CommandTimeout: If the deadline passed (the process tree is killed)
        CommandError: If check is True and the command failed
    """
    argv = [program, *args]
    proc = await _spawn(argv, cwd, env, with_stdin=input_text is not None)
    buffer = OutputBuffer()

    async def feed_stdin() -> None:
        if input_text is None or proc.stdin is None:
            return
        try:
            proc.stdin.write(input_text.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            log.debug("%s closed stdin early", argv[0])
        finally:
            proc.stdin.close()

    async def pump(stream: Optional[asyncio.StreamReader], name: str) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                log.debug("Dropped oversized %s line from %s", name, argv[0])
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            buffer.append(name, line)
            if on_line is not None:
                on_line(name, line)

    async def communicate() -> int:
        await asyncio.gather(
            feed_stdin(),
            pump(proc.stdout, "stdout"),
            pump(proc.stderr, "stderr"),
        )
        return await proc.wait()

    try:
        returncode = await asyncio.wait_for(communicate(), timeout)
    except asyncio.TimeoutError:
        raise CommandTimeout(argv, timeout or 0, buffer.text()) from None
    finally:
        if proc.returncode is None:
            await _terminate(proc, argv)

    result = CommandResult(
        argv=argv,
        returncode=returncode,
        stdout=buffer.text("stdout"),
        stderr=buffer.text("stderr"),
    )
    if not result.ok:
        level = logging.WARNING if check else logging.DEBUG
        log.log(level, "%s failed (%s)", _format_argv(argv), result.returncode)
        if check:
            raise CommandError(argv, result.returncode, result.output)
    return result
