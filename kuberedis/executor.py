"""
Remote command execution inside pods.

Provides:
- ``PodCommandRunner``: the "run argv in a pod container, capture output" seam
- ``KubePodCommandRunner``: implementation over the Kubernetes exec API
- ``KubePodLister`` / ``StaticPodLister``: sources of ``PodRef`` candidates
- ``RedisCli``: redis-cli invocations on top of a runner, with error-reply
  classification and transport retries for read-only commands

Commands are always passed as argument vectors; no shell is involved, so
node IDs and master names cannot inject anything.
"""

import asyncio
import logging
from typing import List, Optional, Protocol, Sequence

from kubernetes.client import CoreV1Api
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError
from websocket import WebSocketException

from kuberedis.config import KubeRedisConfig
from kuberedis.errors import (
    ContainerNotFound,
    ExecTransportError,
    NonZeroExit,
    PodNotFound,
    PodNotRunning,
    RedisCommandError,
)
from kuberedis.models import PodRef
from kuberedis.parser import error_reply
from kuberedis.retry import with_exec_retry

# Raised unwrapped by the Kubernetes client when the API server cannot be
# reached or the exec websocket drops
TRANSPORT_ERRORS = (HTTPError, WebSocketException, OSError)


def redact(argv: Sequence[str]) -> List[str]:
    """Copy of ``argv`` with the value following ``-a`` masked."""
    out = list(argv)
    for i, arg in enumerate(out[:-1]):
        if arg == "-a":
            out[i + 1] = "***"
    return out


class PodCommandRunner(Protocol):
    """Runs one command inside a pod container and returns its stdout."""

    async def run(
        self,
        pod: PodRef,
        container: Optional[str],
        command: Sequence[str],
    ) -> str:
        ...


class PodLister(Protocol):
    """Source of the pods a Redis node address may resolve to."""

    async def list_pods(self) -> List[PodRef]:
        ...


def pod_ref_from_v1(pod, container: Optional[str] = None) -> PodRef:
    """Build a ``PodRef`` snapshot from a ``V1Pod``."""
    containers = pod.spec.containers or []
    if container is None and containers:
        container = containers[0].name
    return PodRef(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        container=container,
        ip=pod.status.pod_ip,
        host=pod.spec.node_name,
    )


# =========================================================================
# Kubernetes exec
# =========================================================================

class KubePodCommandRunner:
    """
    ``PodCommandRunner`` backed by the Kubernetes pod exec API.

    The blocking client calls run in a worker thread; each call opens its own
    exec stream and closes it before returning. ``core_api`` must already be
    authenticated.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        config: Optional[KubeRedisConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.core_api = core_api
        self.config = config or KubeRedisConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def run(
        self,
        pod: PodRef,
        container: Optional[str],
        command: Sequence[str],
    ) -> str:
        """
        Run ``command`` in ``container`` of ``pod``.

        Args:
            pod: Target pod
            container: Container name (None = pod's default container)
            command: Argument vector, executed without a shell

        Returns:
            Captured standard output

        Raises:
            PodNotFound, PodNotRunning, ContainerNotFound: the target is not
                there to run in
            NonZeroExit: the command exited with a non-zero status
            ExecTransportError: the exec stream failed or timed out
        """
        argv = list(command)
        self.logger.debug(
            f"exec {pod.namespace}/{pod.name}[{container or '-'}]: {' '.join(redact(argv))}"
        )
        # The stream enforces exec_timeout itself; the outer bound also
        # covers the pod lookup and the websocket handshake.
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._run_sync, pod, container, argv),
                timeout=self.config.exec_timeout * 2,
            )
        except asyncio.TimeoutError:
            raise ExecTransportError(
                f"exec timed out after {self.config.exec_timeout * 2:.1f}s",
                pod=pod.name, container=container, command=redact(argv),
            )

    def _read_pod(self, pod: PodRef, container: Optional[str], argv: List[str]):
        context = dict(pod=pod.name, container=container, command=redact(argv))
        try:
            v1pod = self.core_api.read_namespaced_pod(pod.name, pod.namespace)
        except ApiException as e:
            if e.status == 404:
                raise PodNotFound(f"pod not found in namespace {pod.namespace}", **context) from e
            raise ExecTransportError(f"could not read pod: {e.status} {e.reason}", **context) from e
        except TRANSPORT_ERRORS as e:
            raise ExecTransportError(f"could not reach API server: {e}", **context) from e

        if v1pod.status.phase != "Running":
            raise PodNotRunning(f"pod is in phase {v1pod.status.phase}", **context)
        names = [c.name for c in v1pod.spec.containers or []]
        if container is not None and container not in names:
            raise ContainerNotFound(f"pod has containers {names}", **context)
        return v1pod

    def _run_sync(self, pod: PodRef, container: Optional[str], argv: List[str]) -> str:
        v1pod = self._read_pod(pod, container, argv)
        if container is None:
            container = v1pod.spec.containers[0].name
        context = dict(pod=pod.name, container=container, command=redact(argv))

        try:
            resp = stream(
                self.core_api.connect_get_namespaced_pod_exec,
                pod.name,
                pod.namespace,
                container=container,
                command=argv,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise ExecTransportError(f"exec stream failed: {e.status} {e.reason}", **context) from e
        except TRANSPORT_ERRORS as e:
            raise ExecTransportError(f"could not open exec stream: {e}", **context) from e

        try:
            resp.run_forever(timeout=self.config.exec_timeout)
            if resp.is_open():
                raise ExecTransportError(
                    f"command did not finish within {self.config.exec_timeout:.1f}s", **context
                )
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            try:
                exit_code = resp.returncode
            except (TypeError, KeyError, IndexError, ValueError) as e:
                raise ExecTransportError("exec finished without an exit status", **context) from e
        except TRANSPORT_ERRORS as e:
            raise ExecTransportError(f"exec stream dropped: {e}", **context) from e
        finally:
            resp.close()

        if exit_code is None:
            raise ExecTransportError("exec finished without an exit status", **context)
        if exit_code != 0:
            raise NonZeroExit(exit_code, stdout=stdout, stderr=stderr, **context)
        return stdout


class KubePodLister:
    """Lists managed pods through the Kubernetes API."""

    def __init__(
        self,
        core_api: CoreV1Api,
        config: Optional[KubeRedisConfig] = None,
    ):
        self.core_api = core_api
        self.config = config or KubeRedisConfig()

    async def list_pods(self) -> List[PodRef]:
        """
        Pods in the configured namespace matching the label selector.

        Raises:
            ExecTransportError: the API server could not be asked
        """
        where = f"namespace {self.config.namespace}"
        try:
            pods = await asyncio.to_thread(
                self.core_api.list_namespaced_pod,
                self.config.namespace,
                label_selector=self.config.label_selector or "",
            )
        except ApiException as e:
            raise ExecTransportError(f"could not list pods in {where}: {e.status} {e.reason}") from e
        except TRANSPORT_ERRORS as e:
            raise ExecTransportError(f"could not list pods in {where}: {e}") from e
        return [pod_ref_from_v1(p, self.config.container) for p in pods.items]

    async def get(self, name: str) -> PodRef:
        """
        Look up a single pod, e.g. the seed pod named by an operator.

        Raises:
            PodNotFound: no such pod in the configured namespace
        """
        try:
            pod = await asyncio.to_thread(
                self.core_api.read_namespaced_pod, name, self.config.namespace
            )
        except ApiException as e:
            if e.status == 404:
                raise PodNotFound(f"pod not found in namespace {self.config.namespace}", pod=name) from e
            raise ExecTransportError(f"could not read pod: {e.status} {e.reason}", pod=name) from e
        except TRANSPORT_ERRORS as e:
            raise ExecTransportError(f"could not reach API server: {e}", pod=name) from e
        return pod_ref_from_v1(pod, self.config.container)


class StaticPodLister:
    """``PodLister`` over a fixed set of pods."""

    def __init__(self, pods: Sequence[PodRef]):
        self.pods = list(pods)

    async def list_pods(self) -> List[PodRef]:
        return list(self.pods)


# =========================================================================
# redis-cli
# =========================================================================

class RedisCli:
    """
    Issues redis-cli commands inside pods through a ``PodCommandRunner``.

    Error replies (``ERR ...``, ``NOGOODSLAVE ...``) are raised as
    ``RedisCommandError`` whether redis-cli exits zero or not. Read-only
    calls are retried on transport errors; pass ``retry=False`` for
    commands with side effects.
    """

    def __init__(
        self,
        runner: PodCommandRunner,
        config: Optional[KubeRedisConfig] = None,
        port: Optional[int] = None,
        password: Optional[str] = None,
        container: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.runner = runner
        self.config = config or KubeRedisConfig()
        self.port = port or self.config.redis_port
        self.password = password
        self.container = container
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._call_with_retry = with_exec_retry(
            max_retries=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
            logger=self.logger,
        )(self._call)

    @classmethod
    def for_redis(cls, runner: PodCommandRunner, config: KubeRedisConfig, **kwargs) -> "RedisCli":
        return cls(
            runner, config,
            port=config.redis_port,
            password=config.password,
            container=config.container,
            **kwargs,
        )

    @classmethod
    def for_sentinel(cls, runner: PodCommandRunner, config: KubeRedisConfig, **kwargs) -> "RedisCli":
        return cls(
            runner, config,
            port=config.sentinel_port,
            password=config.sentinel_password,
            container=config.sentinel_container,
            **kwargs,
        )

    async def call(
        self,
        pod: PodRef,
        *args: object,
        host: Optional[str] = None,
        port: Optional[int] = None,
        container: Optional[str] = None,
        retry: bool = True,
    ) -> str:
        """
        Run one Redis command in ``pod`` and return the raw reply text.

        Args:
            pod: Pod to exec into
            *args: Command and arguments, e.g. ``"CLUSTER", "NODES"``
            host: Address to connect to from inside the pod (default: local)
            port: Port override (default: this client's port)
            container: Container override (default: this client's, then the pod's)
            retry: Retry transport errors; disable for non-idempotent commands

        Raises:
            RedisCommandError: Redis answered with an error reply
            ExecFailure: the command could not be run
        """
        argv = self.config.redis_cli_args(port or self.port, self.password, host)
        argv += [str(a) for a in args]
        container = container or self.container or pod.container
        if retry:
            return await self._call_with_retry(pod, container, argv)
        return await self._call(pod, container, argv)

    async def _call(self, pod: PodRef, container: Optional[str], argv: List[str]) -> str:
        try:
            out = await self.runner.run(pod, container, argv)
        except NonZeroExit as e:
            reply = error_reply(e.stdout) or error_reply(e.stderr)
            if reply:
                raise RedisCommandError(reply, pod=pod.name, command=redact(argv)) from e
            raise
        reply = error_reply(out)
        if reply:
            raise RedisCommandError(reply, pod=pod.name, command=redact(argv))
        return out
