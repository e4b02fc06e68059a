#!/usr/bin/env python3
from __future__ import annotations
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as waitFutures
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Thread
from typing import ClassVar, TypeAlias
import argparse
import atexit
import os
import signal
import subprocess  # nosec: B404
import sys
import threading
import time

# --
# # Multirun
#
# The `multirun` module runs a small batch of commands in parallel and merges
# their output in the console, each line being prefixed by the colored label
# of the command that produced it. Each command runs in its own process
# group, so that terminating a command also terminates whatever it spawned.


BytesConsumer: TypeAlias = Callable[[bytes], None]

SEPARATORS = (";", ",", ":", "|")
DEFAULT_SEPARATOR = ";"
MAX_COMMANDS = 4
POOL_SIZE = 4

MESSAGE_SHUTTING_DOWN = "Shutting down..."
MESSAGE_COMMANDS_LIMIT = "Only support up to {limit} commands"
MESSAGE_COMMANDS_ZERO = "No command to execute"

# Platform detection for /proc filesystem availability
_HAS_PROC = Path("/proc").exists()


# --
# ## Errors


class MultirunError(Exception):
	"""Base class for the errors raised by `multirun`."""


class SpecFormatError(MultirunError, ValueError):
	"""A command spec does not split into the expected fields."""

	def __init__(self, value: str, message: str | None = None) -> None:
		self.value = value
		super().__init__(message or f"Invalid command: {value}")


class PreHookFormatError(SpecFormatError):
	"""The pre-hook is neither a bare command nor a full spec. This one
	is a warning, the batch still runs."""

	def __init__(self, value: str) -> None:
		super().__init__(value, f"Invalid pre-hook command: {value}")


class InvalidColorError(MultirunError, ValueError):
	def __init__(self, value: str) -> None:
		self.value = value
		self.valid: list[str] = Color.Names()
		super().__init__(
			f"Invalid background color: {value} (allowed: {', '.join(self.valid)})"
		)


class BatchSizeError(MultirunError, ValueError):
	"""The batch is empty or has more commands than allowed."""


class SpawnError(MultirunError, RuntimeError):
	"""The OS could not start the process for a command."""

	def __init__(self, command: str, cause: Exception) -> None:
		self.command = command
		self.cause = cause
		super().__init__(f"Could not start `{command}`: {cause}")


# --
# ## Types


class Color(Enum):
	"""The terminal background colors a command label can use."""

	RESET = "\033[0m"
	BLACK = "\033[40m"
	RED = "\033[41m"
	GREEN = "\033[42m"
	YELLOW = "\033[43m"
	BLUE = "\033[44m"
	MAGENTA = "\033[45m"
	CYAN = "\033[46m"
	WHITE = "\033[47m"

	@classmethod
	def Get(cls, name: str | Color) -> Color:
		if isinstance(name, Color):
			return name
		try:
			return cls[name.strip().upper()]
		except KeyError:
			raise InvalidColorError(name) from None

	@classmethod
	def Names(cls) -> list[str]:
		return [_.name for _ in cls]

	@property
	def code(self) -> bytes:
		return bytes(self.value, "utf8")


@dataclass(frozen=True)
class CommandSpec:
	"""A command to run, with the color and prefix of its label. The color
	may be given by name, it is turned into a `Color` (or rejected) on
	construction."""

	color: Color
	prefix: str
	command: str

	def __post_init__(self) -> None:
		if not self.command.split():
			raise SpecFormatError(self.command, "Empty command")
		object.__setattr__(self, "color", Color.Get(self.color))

	# NOTE: Splitting is on whitespace only, there is no support for quoting.
	@property
	def args(self) -> list[str]:
		return self.command.split()


class State(Enum):
	IDLE = "idle"
	RUNNING = "running"
	TERMINATING = "terminating"
	DONE = "done"


class Proc:
	"""Queries and signals processes and process groups."""

	@staticmethod
	def exists(pid: int) -> bool:
		"""Tells if the process is alive. Zombies are reported as dead, as
		they may linger until their parent (or init) reaps them."""
		if _HAS_PROC:
			try:
				# The command name is in parens and may contain spaces
				stat = Path(f"/proc/{pid}/stat").read_text()
				state = stat.rsplit(")", 1)[1].split()[0]
			except (OSError, IndexError):
				return False
			return state not in ("Z", "X")
		else:
			# macOS/BSD fallback using os.kill with signal 0
			try:
				os.kill(pid, 0)
				return True
			except OSError:
				return False

	@staticmethod
	def killgroup(pgid: int, sig: signal.Signals = signal.SIGTERM) -> bool:
		"""Sends `sig` to every process in the group, returning `False` when
		there is no such group left."""
		try:
			os.killpg(pgid, sig)
			return True
		except ProcessLookupError:
			return False
		except PermissionError:
			# macOS reports EPERM for groups made only of zombies
			return False


# --
# ## Multiplexer
#
# Runners write their lines concurrently, the multiplexer makes sure that
# each line reaches the console in one piece.


def fdwriter(fd: int) -> BytesConsumer:
	def writer(data: bytes) -> None:
		view = memoryview(data)
		while view:
			view = view[os.write(fd, view) :]

	return writer


class Multiplexer:
	"""Serializes the lines coming from concurrent runners onto the console,
	formatted as `<color><prefix><reset> <line>`."""

	RESET: ClassVar[bytes] = Color.RESET.code

	def __init__(
		self,
		writer: BytesConsumer | None = None,
		errors: BytesConsumer | None = None,
	) -> None:
		self.writer: BytesConsumer = writer or fdwriter(1)
		# Errors follow a custom writer, unless told otherwise
		self.errors: BytesConsumer = errors or (
			fdwriter(2) if writer is None else self.writer
		)
		self.lock = threading.Lock()

	def format(self, color: Color, prefix: str, line: bytes | str) -> bytes:
		data = line if isinstance(line, bytes) else bytes(line, "utf8")
		if not prefix:
			return data + b"\n"
		return b"".join(
			(color.code, bytes(prefix, "utf8"), self.RESET, b" ", data, b"\n")
		)

	def write(self, color: Color, prefix: str, line: bytes | str) -> None:
		data = self.format(color, prefix, line)
		with self.lock:
			self.writer(data)

	def notice(self, message: str) -> None:
		data = bytes(f"{message}\n", "utf8")
		with self.lock:
			self.writer(data)

	def error(self, message: str) -> None:
		data = bytes(f"{message}\n", "utf8")
		with self.lock:
			self.errors(data)


# --
# ## Process runner


class ProcessRunner:
	"""Owns the process of one command: it starts it, streams its output
	lines to the multiplexer, waits for it and, when asked to, destroys it
	along with its descendants.

	The process is started in a new session, so that its pid is also the id
	of a process group that its descendants inherit. Destroying the runner
	signals the whole group, which covers pipelines and background jobs
	started by the command, without having to walk the process tree."""

	def __init__(
		self,
		spec: CommandSpec,
		output: Multiplexer,
		grace: float = 5.0,
		force: float = 2.0,
	) -> None:
		self.spec: CommandSpec = spec
		self.output: Multiplexer = output
		self.grace: float = grace
		self.force: float = force
		self.process: subprocess.Popen[bytes] | None = None
		self.returncode: int | None = None
		self.state: State = State.IDLE
		self.lock = threading.Lock()
		self.done = threading.Event()

	@property
	def pid(self) -> int | None:
		return self.process.pid if self.process else None

	@property
	def isRunning(self) -> bool:
		return bool(self.pid and Proc.exists(self.pid))

	def start(self) -> bool:
		"""Spawns the process, returning `False` if the runner was destroyed
		before it could start."""
		with self.lock:
			if self.state is not State.IDLE:
				return False
			try:
				self.process = subprocess.Popen(  # nosec: B603
					self.spec.args,
					stdin=subprocess.DEVNULL,
					stdout=subprocess.PIPE,
					stderr=subprocess.STDOUT,
					start_new_session=True,
				)
			except (OSError, ValueError) as e:
				self.state = State.DONE
				self.done.set()
				raise SpawnError(self.spec.command, e) from e
			self.state = State.RUNNING
			return True

	def produceLines(self) -> Iterator[bytes]:
		"""Yields the lines of the merged stdout/stderr stream, stripped from
		their line terminator, until the process closes its output."""
		stream = self.process.stdout if self.process else None
		if stream is None:
			return
		try:
			for line in stream:
				if line.endswith(b"\n"):
					line = line[:-1]
				if line.endswith(b"\r"):
					line = line[:-1]
				yield line
		except (OSError, ValueError) as e:
			self.output.error(f"ERROR Reading output of `{self.spec.command}`: {e}")
		finally:
			try:
				stream.close()
			except OSError:
				pass

	def waitForExit(self) -> int | None:
		if self.process is None:
			return None
		self.returncode = self.process.wait()
		return self.returncode

	def run(self) -> int | None:
		"""Runs the command to completion, forwarding its output to the
		multiplexer, and returns its exit code."""
		try:
			if not self.start():
				return None
		except SpawnError as e:
			self.output.error(f"ERROR {e}")
			return None
		color, prefix = self.spec.color, self.spec.prefix
		try:
			for line in self.produceLines():
				self.output.write(color, prefix, line)
		except OSError as e:
			# The console is gone, nobody will read the process output
			self.destroy()
			try:
				self.output.error(f"ERROR Writing output of `{self.spec.command}`: {e}")
			except OSError:
				# The error stream may be gone too (`2>&1 | head`)
				pass
		returncode = self.waitForExit()
		self._finish()
		return returncode

	def _finish(self) -> None:
		with self.lock:
			if self.state is not State.RUNNING:
				return
			self.state = State.DONE
		# Descendants left in the group by the command don't outlive it
		if self.process:
			Proc.killgroup(self.process.pid, signal.SIGTERM)
		self.done.set()

	def destroy(self, wait: bool = True) -> bool:
		"""Terminates the process and its descendants: SIGTERM to the
		group, then SIGKILL once the process has exited or `grace` seconds
		have passed. This can be called from any thread and any number of
		times, only the first call on a running process does something, and
		it returns `True`. With `wait=False` the escalation happens in the
		background."""
		with self.lock:
			if self.state is State.IDLE:
				self.state = State.DONE
				self.done.set()
				return False
			elif self.state is not State.RUNNING:
				return False
			self.state = State.TERMINATING
		if self.process:
			Proc.killgroup(self.process.pid, signal.SIGTERM)
		if wait:
			self._reap()
		else:
			Thread(
				target=self._reap, name=f"multirun-reap-{self.pid}", daemon=True
			).start()
		return True

	def _reap(self) -> None:
		process = self.process
		if process:
			try:
				process.wait(timeout=self.grace)
			except subprocess.TimeoutExpired:
				pass
			# Whatever is left in the group is killed, the process included
			Proc.killgroup(process.pid, signal.SIGKILL)
			try:
				self.returncode = process.wait(timeout=self.force)
			except subprocess.TimeoutExpired:
				self.output.error(
					f"ERROR Process {process.pid} (`{self.spec.command}`) did not terminate"
				)
		with self.lock:
			self.state = State.DONE
		self.done.set()


# --
# ## Supervisor


class Supervisor:
	"""Runs a batch of commands on a fixed-size pool of worker threads, and
	makes sure that every process of the batch is destroyed on shutdown."""

	SIGNALS: ClassVar[tuple[str, ...]] = ("SIGINT", "SIGTERM", "SIGHUP")
	POLL: ClassVar[float] = 1.0

	def __init__(
		self,
		output: Multiplexer | None = None,
		poolSize: int = POOL_SIZE,
		grace: float = 5.0,
		force: float = 2.0,
		hooks: bool = True,
	) -> None:
		self.output: Multiplexer = output or Multiplexer()
		self.poolSize: int = poolSize
		self.grace: float = grace
		self.force: float = force
		self.hooks: bool = hooks
		self.runners: list[ProcessRunner] = []
		self.preHook: ProcessRunner | None = None
		self.futures: dict[Future[int | None], ProcessRunner] = {}
		self.executor: ThreadPoolExecutor | None = None
		self.shutdown = threading.Event()
		self.lock = threading.Lock()
		self.registered: bool = False

	def createRunner(self, spec: CommandSpec) -> ProcessRunner:
		return ProcessRunner(spec, self.output, grace=self.grace, force=self.force)

	def run(
		self,
		specs: Iterable[str | CommandSpec],
		preHook: str | CommandSpec | None = None,
		separator: str = DEFAULT_SEPARATOR,
	) -> list[ProcessRunner]:
		"""Starts the batch and returns its runners, without waiting for
		them. The whole batch is validated before anything is spawned, and
		the pre-hook (if any) runs to completion before the batch starts."""
		if self.runners or self.executor:
			raise RuntimeError("Supervisor has already run a batch")
		batch = [
			_ if isinstance(_, CommandSpec) else parse_spec(_, separator) for _ in specs
		]
		self.runners = [self.createRunner(_) for _ in batch]
		self.registerShutdown()
		if preHook is not None:
			self.runPreHook(preHook, separator)
		self.executor = ThreadPoolExecutor(
			max_workers=self.poolSize, thread_name_prefix="multirun"
		)
		for runner in self.runners:
			self.futures[self.executor.submit(self._work, runner)] = runner
		# No more work after the batch, the workers drain what was submitted
		self.executor.shutdown(wait=False)
		return self.runners

	def runPreHook(
		self, preHook: str | CommandSpec, separator: str = DEFAULT_SEPARATOR
	) -> int | None:
		try:
			spec = (
				preHook
				if isinstance(preHook, CommandSpec)
				else parse_prehook(preHook, separator)
			)
		except PreHookFormatError as e:
			self.output.notice(f"WARNING {e}")
			return None
		self.preHook = self.createRunner(spec)
		if self.shutdown.is_set():
			self.preHook.destroy()
			return None
		return self.preHook.run()

	def _work(self, runner: ProcessRunner) -> int | None:
		if self.shutdown.is_set():
			runner.destroy()
			return None
		return runner.run()

	def join(self, timeout: float | None = None) -> list[ProcessRunner]:
		"""Joins the batch, waiting indefinitely or up to `timeout` seconds,
		and returns the runners that are still active."""
		started = time.monotonic()
		pending = set(self.futures)
		while pending:
			left = None if timeout is None else timeout - (time.monotonic() - started)
			if left is not None and left <= 0:
				break
			# NOTE: We poll so that signal handlers get a chance to run
			done, pending = waitFutures(
				pending, timeout=self.POLL if left is None else min(self.POLL, left)
			)
			for future in done:
				if (error := future.exception()) is not None:
					self.output.error(
						f"ERROR Running `{self.futures[future].spec.command}`: {error}"
					)
		return [self.futures[_] for _ in pending]

	def allRunners(self) -> list[ProcessRunner]:
		return ([self.preHook] if self.preHook else []) + self.runners

	def waitDone(self, timeout: float) -> list[ProcessRunner]:
		"""Waits up to `timeout` seconds for the workers and for every runner,
		the pre-hook included, to be done, returning those that are not. The
		escalation to SIGKILL runs on daemon threads, which do not survive
		the exit of the interpreter."""
		started = time.monotonic()
		self.join(timeout=timeout)
		return [
			_
			for _ in self.allRunners()
			if not _.done.wait(timeout=max(0.0, timeout - (time.monotonic() - started)))
		]

	# --
	# ### Shutdown
	#
	# There is a single entry point, `shutdownAll`, called by the signal
	# handlers, the exit hook or the timeout.

	def shutdownAll(self) -> bool:
		"""Destroys every runner (in the background), once. Returns `False`
		if the shutdown had already been requested."""
		with self.lock:
			if self.shutdown.is_set():
				return False
			self.shutdown.set()
		self.output.notice(MESSAGE_SHUTTING_DOWN)
		for runner in self.allRunners():
			runner.destroy(wait=False)
		return True

	def registerShutdown(self) -> None:
		if self.registered or not self.hooks:
			return
		self.registered = True
		atexit.register(self.shutdownAll)
		for signame in self.SIGNALS:
			if hasattr(signal, signame):
				try:
					signal.signal(getattr(signal, signame), self.onSignal)
				except (OSError, ValueError):
					# Signal not available, or we're not in the main thread
					pass

	def onSignal(self, signum: int, frame: object) -> None:
		if self.shutdownAll():
			remaining = self.waitDone(timeout=self.grace + self.force)
			if remaining:
				self.output.error(
					f"WARNING {len(remaining)} processes did not terminate cleanly"
				)
		sys.exit(0)


# --
# ## Parsing


def check_separator(separator: str) -> str:
	if separator not in SEPARATORS:
		raise SpecFormatError(
			separator,
			f"Invalid separator: {separator} (allowed: {' '.join(SEPARATORS)})",
		)
	return separator


def parse_spec(text: str, separator: str = DEFAULT_SEPARATOR) -> CommandSpec:
	"""Parses a `COLOR;PREFIX;COMMAND` string, where `;` is the separator."""
	fields = text.split(check_separator(separator))
	if len(fields) != 3 or not fields[2].strip():
		raise SpecFormatError(text)
	color, prefix, command = fields
	return CommandSpec(color, prefix, command)


def parse_specs(
	items: Iterable[str | CommandSpec],
	separator: str = DEFAULT_SEPARATOR,
	limit: int = MAX_COMMANDS,
) -> list[CommandSpec]:
	items = list(items)
	if not items:
		raise BatchSizeError(MESSAGE_COMMANDS_ZERO)
	if len(items) > limit:
		raise BatchSizeError(MESSAGE_COMMANDS_LIMIT.format(limit=limit))
	return [
		_ if isinstance(_, CommandSpec) else parse_spec(_, separator) for _ in items
	]


def parse_prehook(text: str, separator: str = DEFAULT_SEPARATOR) -> CommandSpec:
	"""Parses the pre-hook, which is either a bare command or a full
	`COLOR;PREFIX;COMMAND` spec."""
	fields = text.split(check_separator(separator))
	try:
		if len(fields) == 1:
			return CommandSpec(Color.RESET, "", fields[0])
		elif len(fields) == 3:
			return CommandSpec(*fields)
	except (SpecFormatError, InvalidColorError):
		pass
	raise PreHookFormatError(text)


# --
# ## Command-line interface


def allowed_colors() -> str:
	reset = Color.RESET.value
	return "Allowed background colors: " + " ".join(
		f"{_.value}{_.name}{reset}" for _ in Color
	)


def usage(sep: str = DEFAULT_SEPARATOR) -> str:
	return (
		"Usage: multirun [options] "
		f'"<background-color>{sep}<prefix>{sep}<command>" '
		f'["<background-color>{sep}<prefix>{sep}<command>"...]'
	)


def cli(argv: list[str] | None = None) -> int:
	"""The command-line interface of this module."""
	argv = sys.argv[1:] if argv is None else list(argv)
	oparser = argparse.ArgumentParser(
		prog="multirun",
		formatter_class=argparse.RawDescriptionHelpFormatter,
		description="Runs up to 4 commands in parallel, prefixing their output with a colored label.",
		epilog="\n".join(
			(
				usage(),
				f"Allowed separators: {' '.join(SEPARATORS)}",
				allowed_colors(),
			)
		),
	)
	oparser.add_argument(
		"commands",
		metavar="COMMANDS",
		type=str,
		nargs="*",
		help="The commands to run in parallel, as COLOR;PREFIX;COMMAND",
	)
	oparser.add_argument(
		"-s",
		"--separator",
		"--delimiter",
		dest="separator",
		default=DEFAULT_SEPARATOR,
		choices=SEPARATORS,
		help="The separator between the fields of a command",
	)
	oparser.add_argument(
		"-pre",
		"--pre",
		"--startup",
		dest="pre",
		default=None,
		help="A command to run to completion before the others, either COMMAND or COLOR;PREFIX;COMMAND",
	)
	oparser.add_argument(
		"-t",
		"--timeout",
		type=float,
		dest="timeout",
		default=0,
		help="Specifies a timeout after which the commands are terminated",
	)
	oparser.add_argument(
		"-p",
		"--parse",
		action="store_true",
		default=False,
		help="Outputs the parsed commands, without running them",
	)
	if not argv:
		oparser.print_help()
		return 0
	args = oparser.parse_args(args=argv)
	output = Multiplexer()
	try:
		specs = parse_specs(args.commands, args.separator)
	except BatchSizeError as e:
		output.error(f"ERROR {e}")
		return 1
	except InvalidColorError as e:
		output.error(f"ERROR Invalid background color: {e.value}")
		output.error(allowed_colors())
		return 1
	except SpecFormatError as e:
		output.error(f"ERROR {e}")
		output.error(usage(args.separator))
		return 1
	if args.parse:
		for command, spec in zip(args.commands, specs):
			output.notice(f"Parsed: {command}")
			output.notice(f"- color: {spec.color.name}")
			output.notice(f"- prefix: {spec.prefix!r}")
			output.notice(f"- cmd: {spec.args}")
		return 0
	supervisor = Supervisor(output)
	supervisor.run(specs, preHook=args.pre, separator=args.separator)
	if args.timeout:
		supervisor.join(timeout=args.timeout)
		supervisor.shutdownAll()
	supervisor.join()
	return 0


if __name__ == "__main__":
	sys.exit(cli())
# EOF
