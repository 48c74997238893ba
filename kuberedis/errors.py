"""
Exception hierarchy for kuberedis.

Every failure carries enough context (pod, command) to be diagnosed from the
message alone. Per-line parse problems in multi-row replies are not raised;
see ``kuberedis.models.SkippedLine``.
"""

from typing import TYPE_CHECKING, Any, Optional, Sequence

from redis.exceptions import ResponseError

if TYPE_CHECKING:
    from kuberedis.models import FailoverAttempt


def _render(command: Optional[Sequence[str]]) -> str:
    return " ".join(command) if command else ""


class KubeRedisError(Exception):
    """Base class for all kuberedis errors."""


class ExecFailure(KubeRedisError):
    """A command could not be run inside a pod."""

    def __init__(
        self,
        message: str,
        pod: Optional[str] = None,
        container: Optional[str] = None,
        command: Optional[Sequence[str]] = None,
    ):
        self.pod = pod
        self.container = container
        self.command = list(command) if command else []
        context = []
        if pod:
            context.append(f"pod={pod}")
        if container:
            context.append(f"container={container}")
        if self.command:
            context.append(f"command={_render(self.command)!r}")
        if context:
            message = f"{message} ({' '.join(context)})"
        super().__init__(message)


class PodNotFound(ExecFailure):
    """The named pod does not exist."""


class ContainerNotFound(ExecFailure):
    """The pod exists but has no container with the requested name."""


class PodNotRunning(ExecFailure):
    """The pod exists but is not in the Running phase."""


class ExecTransportError(ExecFailure):
    """The exec stream failed or timed out before the command finished."""


class NonZeroExit(ExecFailure):
    """The command ran but exited with a non-zero status."""

    def __init__(
        self,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        message = f"command exited with status {exit_code}"
        if detail:
            message += f": {detail}"
        super().__init__(message, **kwargs)


class RedisCommandError(KubeRedisError, ResponseError):
    """The pod was reached but Redis answered with an error reply."""

    def __init__(
        self,
        reply: str,
        pod: Optional[str] = None,
        command: Optional[Sequence[str]] = None,
    ):
        self.reply = reply.strip()
        self.pod = pod
        self.command = list(command) if command else []
        super().__init__(
            f"{self.reply} (pod={pod} command={_render(self.command)!r})"
        )

    @property
    def code(self) -> str:
        """Leading error code of the reply, e.g. ``ERR`` or ``NOGOODSLAVE``."""
        return self.reply.split(" ", 1)[0] if self.reply else ""


class ParseError(KubeRedisError, ValueError):
    """Reply text did not match the expected grammar."""

    def __init__(self, message: str, text: Optional[str] = None):
        self.text = text
        super().__init__(message)


class InvalidFailoverTarget(KubeRedisError):
    """The failover target or requested replica is not usable."""


class ConvergenceTimeout(KubeRedisError):
    """The failover poll budget ran out before the new topology was observed."""

    def __init__(
        self,
        attempt: "FailoverAttempt",
        last_view: Any = None,
    ):
        self.attempt = attempt
        self.last_view = last_view
        super().__init__(
            f"failover of {attempt.target!r} did not converge after "
            f"{attempt.polls} polls; Redis may still complete it asynchronously"
        )
