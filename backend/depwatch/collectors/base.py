# depwatch/collectors/base.py
"""
Base classes for the ecosystem collectors.

BaseCollector: scans one project in one ecosystem.
               Collectors shell out to the ecosystem's own tooling and parse
               its JSON output into Dependency / Vulnerability records.

ToolRunner:    owns every subprocess call. It turns a missing binary, a
               timeout or a failed exit into a classified CollectorError
               so nothing raw leaks past the collector.

A collector runs up to two phases:
    inventory() : resolved packages + latest versions   (check_outdated)
    audit()     : known advisories                      (check_vulnerabilities)

BaseCollector.run() handles automatically:
    - Timing (duration_seconds)
    - Error classification per phase (an exception becomes a ScanError)
    - Partial results: if one phase fails the other one still counts
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from depwatch.collectors.registry_client import REQUEST_TIMEOUT
from depwatch.errors import (
    CollectorError,
    CollectorUnavailable,
    ParseError,
    ProcessFailure,
    ProcessTimeout,
    ScanCancelled,
)
from depwatch.models import (
    CHECK_OUTDATED,
    CHECK_VULNERABILITIES,
    CollectorOutcome,
    Dependency,
    ScanError,
    ScanOptions,
    Vulnerability,
)

logger = logging.getLogger(__name__)

# How often a running tool is polled for cancellation
POLL_INTERVAL = 0.25


@dataclass
class ToolOutput:
    returncode: int
    stdout: str
    stderr: str


class ToolRunner:
    """
    Run external tools against a shared wall-clock deadline.

    deadline:      time.monotonic() value after which tools are killed
    cancel_event:  set from another thread to kill the running tool
    """

    def __init__(
        self,
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.deadline = deadline
        self.cancel_event = cancel_event or threading.Event()
        self.env = env

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check_budget(self, label: str) -> Optional[float]:
        """Raise if the scan was cancelled or is out of time; return the time left."""
        if self.cancel_event.is_set():
            raise ScanCancelled(f"scan cancelled before {label}")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise ProcessTimeout(f"no time budget left for {label}")
        return remaining

    def request_timeout(self, default: float, label: str) -> float:
        """HTTP timeout for one registry request, clipped to the scan deadline."""
        remaining = self.check_budget(label)
        if remaining is None:
            return default
        return min(default, remaining)

    def which(self, binary: str) -> str:
        path = shutil.which(binary)
        if not path:
            raise CollectorUnavailable(f"'{binary}' not found on PATH")
        return path

    def run(
        self,
        cmd: Sequence[str],
        cwd: Path,
        ok_codes: Iterable[int] = (0,),
        allow_output_on_failure: bool = False,
    ) -> ToolOutput:
        """
        Run cmd in cwd and return its output.

        A nonzero exit listed in ok_codes is normal (npm outdated exits 1
        when it has something to report). With allow_output_on_failure, any
        exit code is accepted as long as stdout is non-empty. Audit tools
        exit nonzero when they find something and still print JSON.
        """
        self.check_budget(cmd[0])
        binary = self.which(cmd[0])
        argv = [binary, *cmd[1:]]

        logger.debug(f"Running {' '.join(cmd)} in {cwd}")
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                env=self.env,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise CollectorUnavailable(f"'{cmd[0]}' could not be executed: {e}")
        except OSError as e:
            raise ProcessFailure(f"'{cmd[0]}' failed to start: {e}")

        stdout, stderr = self._wait(proc, cmd[0])

        code = proc.returncode
        if code in tuple(ok_codes):
            return ToolOutput(code, stdout or "", stderr or "")
        if allow_output_on_failure and (stdout or "").strip():
            return ToolOutput(code, stdout, stderr or "")

        snippet = (stderr or stdout or "").strip()[:500]
        raise ProcessFailure(f"{cmd[0]} exited with code {code}: {snippet or 'no output'}")

    def _wait(self, proc: subprocess.Popen, label: str):
        while True:
            slice_timeout = POLL_INTERVAL
            remaining = self.remaining()
            if remaining is not None:
                if remaining <= 0:
                    _kill(proc)
                    raise ProcessTimeout(f"{label} exceeded its time budget and was killed")
                slice_timeout = min(slice_timeout, remaining)
            try:
                return proc.communicate(timeout=slice_timeout)
            except subprocess.TimeoutExpired:
                if self.cancel_event.is_set():
                    _kill(proc)
                    raise ScanCancelled(f"{label} cancelled")


def _kill(proc: subprocess.Popen) -> None:
    """Kill the whole process group (npm and go spawn children)."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:  # pragma: no cover - windows
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass
    try:
        proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:  # pragma: no cover
        logger.warning(f"Process {proc.pid} did not exit after SIGKILL")


def parse_json_output(text: str, tool: str, empty: Any = None) -> Any:
    """json.loads with tool failures classified as ParseError."""
    if not (text or "").strip():
        if empty is not None:
            return empty
        raise ParseError(f"{tool} produced no output")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"{tool} output is not valid JSON: {e}")


def iter_json_stream(text: str, tool: str) -> Iterator[Any]:
    """
    Decode a stream of concatenated JSON values.

    `go list -json` and `govulncheck -json` print one object after another
    with no enclosing array.
    """
    decoder = json.JSONDecoder()
    idx = 0
    length = len(text)
    while idx < length:
        while idx < length and text[idx].isspace():
            idx += 1
        if idx >= length:
            break
        try:
            obj, idx = decoder.raw_decode(text, idx)
        except json.JSONDecodeError as e:
            raise ParseError(f"{tool} output is not a valid JSON stream: {e}")
        yield obj


# ---------------------------------------------------------------------------
# Abstract base class
# ---------------------------------------------------------------------------

class BaseCollector(ABC):
    """
    Abstract base for ecosystem collectors.

    To add an ecosystem:
        1. Subclass BaseCollector
        2. Set the `ecosystem` property ("nodejs", "python", "go", ...)
        3. Implement inventory() and audit()
        4. Register it in depwatch/collectors/__init__.py ALL_COLLECTORS

    Collectors are stateless apart from the subprocesses they start, so one
    instance is shared by all workers.
    """

    def __init__(self, registry_client: Any = None):
        self.registry_client = registry_client

    @property
    @abstractmethod
    def ecosystem(self) -> str:
        ...

    @property
    def binaries(self) -> List[str]:
        """External tools this collector may invoke."""
        return []

    def run(
        self,
        path: Path,
        options: Optional[ScanOptions] = None,
        runner: Optional[ToolRunner] = None,
    ) -> CollectorOutcome:
        """
        Scan a project. DO NOT OVERRIDE: implement inventory()/audit().

        Returns a CollectorOutcome, always, even on failure.
        """
        options = options or ScanOptions()
        if runner is None:
            runner = ToolRunner(deadline=time.monotonic() + options.timeout)

        outcome = CollectorOutcome(ecosystem=self.ecosystem)
        start = time.monotonic()

        try:
            if options.check_outdated:
                outcome.checks_run.append(CHECK_OUTDATED)
                try:
                    outcome.dependencies = self.inventory(Path(path), options, runner)
                except CollectorError as e:
                    self._record(outcome, CHECK_OUTDATED, e, path)

            if options.check_vulnerabilities:
                outcome.checks_run.append(CHECK_VULNERABILITIES)
                try:
                    outcome.vulnerabilities = self.audit(Path(path), options, runner)
                except CollectorError as e:
                    self._record(outcome, CHECK_VULNERABILITIES, e, path)
        except Exception as e:
            # Bug in a parser, not a tool fault: report it as unparseable output
            logger.exception(f"Collector '{self.ecosystem}' crashed for {path}")
            outcome.errors.append(
                ScanError(kind="ParseError", message=f"{type(e).__name__}: {e}", retryable=False)
            )
            outcome.checks_failed = list(outcome.checks_run)
        finally:
            outcome.duration_seconds = round(time.monotonic() - start, 3)

        return outcome

    def _record(self, outcome: CollectorOutcome, check: str, err: CollectorError, path) -> None:
        logger.warning(f"{self.ecosystem} {check} check failed for {path}: [{err.kind}] {err.message}")
        outcome.errors.append(ScanError(kind=err.kind, message=err.message, retryable=err.retryable))
        outcome.checks_failed.append(check)

    def registry_lookup(self, runner: ToolRunner, method: str, *args):
        """
        Call a registry client method inside the scan's budget.

        Raises ScanCancelled or ProcessTimeout instead of starting a request
        once the scan is cancelled or out of time. The HTTP timeout is
        clipped to whatever is left of the deadline.
        """
        client = self.registry_client
        timeout = runner.request_timeout(getattr(client, "timeout", REQUEST_TIMEOUT), method)
        return getattr(client, method)(*args, timeout=timeout)

    @abstractmethod
    def inventory(self, path: Path, options: ScanOptions, runner: ToolRunner) -> List[Dependency]:
        """Resolved dependencies with latest-version metadata."""
        ...

    @abstractmethod
    def audit(self, path: Path, options: ScanOptions, runner: ToolRunner) -> List[Vulnerability]:
        """Known vulnerabilities affecting the project's dependencies."""
        ...
