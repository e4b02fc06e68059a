#!/usr/bin/env python3
"""Tests the `Supervisor`: batches, pre-hooks, validation and shutdown."""

import sys
import os
import threading
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../src/py"))

from multirun import (
	Color,
	CommandSpec,
	InvalidColorError,
	Multiplexer,
	Proc,
	SpecFormatError,
	State,
	Supervisor,
)


class Capture:
	def __init__(self):
		self.chunks = []
		self.lock = threading.Lock()

	def __call__(self, data: bytes) -> None:
		with self.lock:
			self.chunks.append(data)

	@property
	def lines(self) -> list[bytes]:
		with self.lock:
			return b"".join(self.chunks).splitlines()


def wait_until(predicate, timeout: float = 5.0) -> bool:
	started = time.time()
	while time.time() - started < timeout:
		if predicate():
			return True
		time.sleep(0.05)
	return predicate()


@pytest.fixture
def capture():
	return Capture()


@pytest.fixture
def supervisor(capture):
	supervisor = Supervisor(Multiplexer(writer=capture), hooks=False)
	yield supervisor
	# Never leave processes behind, whatever the test did
	supervisor.shutdownAll()
	supervisor.join(timeout=10)


def test_batch_output(supervisor, capture):
	runners = supervisor.run(["RED;web;echo hi", "BLUE;db;echo bye"])
	assert [_.spec.prefix for _ in runners] == ["web", "db"]
	assert supervisor.join(timeout=10) == []
	assert sorted(capture.lines) == sorted(
		[b"\033[41mweb\033[0m hi", b"\033[44mdb\033[0m bye"]
	)
	assert all(_.state is State.DONE for _ in runners)
	assert all(_.returncode == 0 for _ in runners)


def test_each_line_once_with_its_own_prefix(supervisor, capture):
	colors = ["RED", "GREEN", "BLUE", "CYAN"]
	specs = [
		f"{color};p{n};seq {n * 100} {n * 100 + 49}" for n, color in enumerate(colors)
	]
	supervisor.run(specs)
	assert supervisor.join(timeout=10) == []
	lines = capture.lines
	assert len(lines) == 200
	for n, color in enumerate([Color.RED, Color.GREEN, Color.BLUE, Color.CYAN]):
		label = color.code + bytes(f"p{n}", "utf8") + Color.RESET.code + b" "
		mine = [_[len(label) :] for _ in lines if _.startswith(label)]
		assert mine == [bytes(str(_), "utf8") for _ in range(n * 100, n * 100 + 50)]


def test_accepts_command_specs(supervisor, capture):
	supervisor.run([CommandSpec(Color.GREEN, "", "echo plain")])
	supervisor.join(timeout=10)
	assert capture.lines == [b"plain"]


def test_other_separator(supervisor, capture):
	supervisor.run(["RED|web|echo hi"], separator="|")
	supervisor.join(timeout=10)
	assert capture.lines == [b"\033[41mweb\033[0m hi"]


def test_invalid_color_spawns_nothing(supervisor):
	with pytest.raises(InvalidColorError):
		supervisor.run(["RED;web;echo hi", "PURPLE;db;echo bye"])
	assert supervisor.runners == []
	assert supervisor.executor is None
	assert supervisor.futures == {}


def test_invalid_format_spawns_nothing(supervisor, capture, tmp_path):
	marker = tmp_path / "marker"
	with pytest.raises(SpecFormatError) as info:
		supervisor.run([f"RED;web;touch {marker}", "RED;db"], preHook=f"touch {marker}")
	assert info.value.value == "RED;db"
	assert supervisor.runners == []
	assert supervisor.preHook is None
	assert not marker.exists()
	assert capture.lines == []


def test_runs_only_once(supervisor):
	supervisor.run(["RED;web;echo hi"])
	with pytest.raises(RuntimeError):
		supervisor.run(["RED;web;echo hi"])


def test_pre_hook_runs_first(supervisor, capture):
	supervisor.run(
		["RED;a;echo second", "BLUE;b;echo third"], preHook="GREEN;pre;echo first"
	)
	supervisor.join(timeout=10)
	lines = capture.lines
	assert lines[0] == b"\033[42mpre\033[0m first"
	assert len(lines) == 3
	assert supervisor.preHook.state is State.DONE


def test_bare_pre_hook(supervisor, capture):
	supervisor.run(["RED;a;echo batch"], preHook="echo bare")
	supervisor.join(timeout=10)
	assert capture.lines[0] == b"bare"


def test_malformed_pre_hook_is_a_warning(supervisor, capture):
	supervisor.run(["RED;a;echo batch"], preHook="RED;oops")
	supervisor.join(timeout=10)
	lines = capture.lines
	assert lines[0].startswith(b"WARNING")
	assert b"RED;oops" in lines[0]
	assert lines[1] == b"\033[41ma\033[0m batch"
	assert supervisor.preHook is None


def test_spawn_error_does_not_affect_siblings(supervisor, capture):
	runners = supervisor.run(["RED;a;/nonexistent/multirun-binary", "BLUE;b;echo ok"])
	assert supervisor.join(timeout=10) == []
	lines = capture.lines
	assert any(_.startswith(b"ERROR") and b"multirun-binary" in _ for _ in lines)
	assert b"\033[44mb\033[0m ok" in lines
	assert runners[0].process is None
	assert runners[1].returncode == 0


def test_more_specs_than_workers(capture):
	supervisor = Supervisor(Multiplexer(writer=capture), poolSize=2, hooks=False)
	supervisor.run([f"RED;{_};echo {_}" for _ in range(4)])
	assert supervisor.join(timeout=10) == []
	assert len(capture.lines) == 4


def test_shutdown_terminates_everything(supervisor, capture, tmp_path):
	body = "sleep 30 &\necho $!\nwait\n"
	scripts = []
	for name in ("a", "b"):
		path = tmp_path / f"{name}.sh"
		path.write_text(body)
		scripts.append(f"RED;{name};sh {path}")
	runners = supervisor.run(scripts)
	assert wait_until(lambda: len(capture.lines) == 2)
	children = [_.pid for _ in runners]
	descendants = [int(_.rsplit(b" ", 1)[1]) for _ in capture.lines]
	assert all(Proc.exists(_) for _ in children + descendants)
	started = time.time()
	assert supervisor.shutdownAll() is True
	assert supervisor.shutdownAll() is False
	assert supervisor.join(timeout=10) == []
	assert time.time() - started < 10
	assert b"Shutting down..." in capture.lines
	assert capture.lines.count(b"Shutting down...") == 1
	for pid in children + descendants:
		assert wait_until(lambda: not Proc.exists(pid))
	assert all(_.done.wait(timeout=5) for _ in runners)
	assert all(_.state is State.DONE for _ in runners)


def test_shutdown_before_scheduling(capture):
	supervisor = Supervisor(Multiplexer(writer=capture), poolSize=1, hooks=False)
	runners = supervisor.run(["RED;a;sleep 30", "BLUE;b;echo never"])
	assert wait_until(lambda: runners[0].state is State.RUNNING)
	supervisor.shutdownAll()
	assert supervisor.join(timeout=10) == []
	assert runners[1].process is None
	assert runners[1].state is State.DONE
	assert not any(b"never" in _ for _ in capture.lines)


def test_wait_done_covers_stubborn_pre_hook(capture, tmp_path):
	path = tmp_path / "stubborn.sh"
	path.write_text("trap '' TERM\necho $$\nwhile true; do sleep 0.1; done\n")
	supervisor = Supervisor(Multiplexer(writer=capture), grace=0.5, hooks=False)
	# The pre-hook blocks `run`, as it would block the main thread
	thread = threading.Thread(
		target=supervisor.run,
		args=(["RED;a;echo batch"],),
		kwargs={"preHook": f"GREEN;pre;sh {path}"},
	)
	thread.start()
	assert wait_until(lambda: len(capture.lines) == 1)
	pid = int(capture.lines[0].rsplit(b" ", 1)[1])
	assert supervisor.shutdownAll() is True
	assert supervisor.waitDone(timeout=5) == []
	assert supervisor.preHook.state is State.DONE
	assert not Proc.exists(pid)
	thread.join(timeout=5)
	assert not thread.is_alive()
	assert supervisor.join(timeout=10) == []
	assert not any(b"batch" in _ for _ in capture.lines)
