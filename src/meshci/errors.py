# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class SuiteFailure(StepFailure):
    """A test suite ran against the network and reported failures."""


@dataclass
class StepTimeout(Exception):
    job: str
    step: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout:g}s"


class RunCancelled(Exception):
    """The run was superseded; not an error, a distinct terminal state."""


@dataclass
class WaitTimeout(Exception):
    what: str
    waited: float
    ceiling: float
    last: object = None

    def __str__(self) -> str:
        return f"timed out waiting for {self.what} after {self.waited:.1f}s (ceiling {self.ceiling:g}s)"


@dataclass
class ConvergenceTimeout(Exception):
    expected: int
    observed: int
    waited: float
    joined: tuple = ()

    def __str__(self) -> str:
        return (
            f"network did not converge: {self.observed}/{self.expected} nodes joined "
            f"after {self.waited:.1f}s"
        )


@dataclass
class NodeDeparted(Exception):
    nodes: tuple

    def __str__(self) -> str:
        return f"{len(self.nodes)} node(s) left the network during the run: {', '.join(self.nodes)}"


class ArtifactError(Exception):
    pass


class ArtifactNotFound(ArtifactError, KeyError):
    def __str__(self) -> str:
        return f"artifact not found: {self.args[0] if self.args else ''}"


class ArtifactExists(ArtifactError):
    def __str__(self) -> str:
        return f"artifact already published (immutable): {self.args[0] if self.args else ''}"


class ReleaseError(Exception):
    pass


class LockUnavailable(ReleaseError):
    pass
