"""
Tests for remote execution.

Covers:
- KubePodCommandRunner over a mocked Kubernetes exec stream
- Distinct failure kinds (pod, container, exit status, transport)
- KubePodLister / StaticPodLister
- RedisCli argv construction, error replies and retries
"""

import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

from kuberedis import (
    ContainerNotFound,
    ExecTransportError,
    KubePodCommandRunner,
    KubePodLister,
    KubeRedisConfig,
    NonZeroExit,
    PodNotFound,
    PodNotRunning,
    PodRef,
    RedisCli,
    RedisCommandError,
    StaticPodLister,
)
from kuberedis.executor import redact


@pytest.fixture
def pod() -> PodRef:
    return PodRef(name="redis-0", namespace="redis", container="redis", ip="10.0.0.10")


@pytest.fixture
def runner(core_api, fast_config) -> KubePodCommandRunner:
    return KubePodCommandRunner(core_api, fast_config)


class TestKubePodCommandRunner:
    """Test the Kubernetes exec-backed runner."""

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_returns_stdout(self, mock_stream, runner, core_api, pod, ws_response):
        """A zero exit returns captured stdout."""
        mock_stream.return_value = ws_response

        out = await runner.run(pod, "redis", ["redis-cli", "-p", "6379", "PING"])

        assert out == "PONG\n"
        args, kwargs = mock_stream.call_args
        assert args[0] is core_api.connect_get_namespaced_pod_exec
        assert args[1:] == ("redis-0", "redis")
        assert kwargs["container"] == "redis"
        assert kwargs["command"] == ["redis-cli", "-p", "6379", "PING"]
        assert kwargs["tty"] is False
        assert kwargs["_preload_content"] is False
        ws_response.run_forever.assert_called_once_with(timeout=runner.config.exec_timeout)
        ws_response.close.assert_called_once()

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_default_container_is_first(self, mock_stream, runner, pod, ws_response):
        """Without a container name the pod's first container is used."""
        mock_stream.return_value = ws_response

        await runner.run(pod, None, ["redis-cli", "PING"])

        assert mock_stream.call_args.kwargs["container"] == "redis"

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_pod_not_found(self, mock_stream, runner, core_api, pod):
        """A 404 from the API is PodNotFound, and no stream is opened."""
        core_api.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(PodNotFound) as exc_info:
            await runner.run(pod, "redis", ["redis-cli", "PING"])

        assert exc_info.value.pod == "redis-0"
        mock_stream.assert_not_called()

    @pytest.mark.asyncio
    async def test_api_error_is_transport_error(self, runner, core_api, pod):
        """Other API failures mean the pod could not be asked."""
        core_api.read_namespaced_pod.side_effect = ApiException(status=500, reason="Internal")

        with pytest.raises(ExecTransportError):
            await runner.run(pod, "redis", ["redis-cli", "PING"])

    @pytest.mark.asyncio
    async def test_pod_not_running(self, runner, core_api, pod):
        """Pending pods are rejected before exec."""
        core_api.read_namespaced_pod.return_value.status.phase = "Pending"

        with pytest.raises(PodNotRunning, match="Pending"):
            await runner.run(pod, "redis", ["redis-cli", "PING"])

    @pytest.mark.asyncio
    async def test_container_not_found(self, runner, pod):
        """An unknown container name is ContainerNotFound."""
        with pytest.raises(ContainerNotFound) as exc_info:
            await runner.run(pod, "sentinel", ["redis-cli", "PING"])

        assert exc_info.value.container == "sentinel"

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_non_zero_exit(self, mock_stream, runner, pod, ws_response):
        """A failing command is NonZeroExit with its output attached."""
        ws_response.returncode = 1
        ws_response.read_stdout.return_value = ""
        ws_response.read_stderr.return_value = "Could not connect to Redis\n"
        mock_stream.return_value = ws_response

        with pytest.raises(NonZeroExit) as exc_info:
            await runner.run(pod, "redis", ["redis-cli", "PING"])

        assert exc_info.value.exit_code == 1
        assert "Could not connect" in exc_info.value.stderr
        assert exc_info.value.command == ["redis-cli", "PING"]

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_stream_still_open_is_timeout(self, mock_stream, runner, pod, ws_response):
        """A command still running after exec_timeout is a transport error."""
        ws_response.is_open.return_value = True
        mock_stream.return_value = ws_response

        with pytest.raises(ExecTransportError, match="did not finish"):
            await runner.run(pod, "redis", ["redis-cli", "PING"])

        ws_response.close.assert_called_once()

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_stream_handshake_failure(self, mock_stream, runner, pod):
        """A failed websocket handshake is a transport error."""
        mock_stream.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(ExecTransportError, match="403"):
            await runner.run(pod, "redis", ["redis-cli", "PING"])

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_unreachable_api_server(self, mock_stream, runner, core_api, pod):
        """Connection errors below the API client are transport errors too."""
        core_api.read_namespaced_pod.side_effect = MaxRetryError(
            None, "/api/v1/namespaces/redis/pods/redis-0", reason="connection refused"
        )

        with pytest.raises(ExecTransportError, match="could not reach API server") as exc_info:
            await runner.run(pod, "redis", ["redis-cli", "PING"])

        assert exc_info.value.pod == "redis-0"
        mock_stream.assert_not_called()

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_stream_protocol_error(self, mock_stream, runner, pod):
        mock_stream.side_effect = ProtocolError("Connection aborted.")

        with pytest.raises(ExecTransportError, match="could not open exec stream"):
            await runner.run(pod, "redis", ["redis-cli", "PING"])

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_stream_dropped_mid_command(self, mock_stream, runner, pod, ws_response):
        """A websocket reset while waiting for output closes the stream and is retryable."""
        ws_response.run_forever.side_effect = ConnectionResetError("reset by peer")
        mock_stream.return_value = ws_response

        with pytest.raises(ExecTransportError, match="exec stream dropped"):
            await runner.run(pod, "redis", ["redis-cli", "PING"])

        ws_response.close.assert_called_once()

    @pytest.mark.asyncio
    @patch("kuberedis.executor.stream")
    async def test_password_redacted_in_errors(self, mock_stream, runner, pod, ws_response):
        """Passwords never appear in error messages."""
        ws_response.returncode = 2
        mock_stream.return_value = ws_response

        with pytest.raises(NonZeroExit) as exc_info:
            await runner.run(pod, "redis", ["redis-cli", "-a", "s3cret", "PING"])

        assert "s3cret" not in str(exc_info.value)
        assert "***" in str(exc_info.value)


class TestRedact:
    def test_masks_password(self):
        assert redact(["redis-cli", "-a", "pw", "PING"]) == ["redis-cli", "-a", "***", "PING"]

    def test_leaves_other_args(self):
        assert redact(["redis-cli", "PING"]) == ["redis-cli", "PING"]


class TestPodListers:
    """Test pod listing."""

    @pytest.mark.asyncio
    async def test_kube_lister_converts_pods(self, core_api):
        """Listed pods become PodRefs with IP and node name."""
        core_api.list_namespaced_pod.return_value = SimpleNamespace(
            items=[core_api.read_namespaced_pod.return_value]
        )
        lister = KubePodLister(core_api, KubeRedisConfig(namespace="redis", label_selector="app=redis"))

        pods = await lister.list_pods()

        core_api.list_namespaced_pod.assert_called_once_with("redis", label_selector="app=redis")
        assert pods == [PodRef("redis-0", "redis", "redis", "10.0.0.10", "node-a")]

    @pytest.mark.asyncio
    async def test_kube_lister_configured_container(self, core_api):
        """A configured container name overrides the first container."""
        lister = KubePodLister(core_api, KubeRedisConfig(namespace="redis", container="exporter"))

        pod = await lister.get("redis-0")

        assert pod.container == "exporter"

    @pytest.mark.asyncio
    async def test_kube_lister_get_missing(self, core_api):
        """Looking up a missing seed pod raises PodNotFound."""
        core_api.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(PodNotFound):
            await KubePodLister(core_api).get("redis-9")

    @pytest.mark.asyncio
    async def test_kube_lister_api_error(self, core_api):
        """A failed listing is a transport error, not a raw client exception."""
        core_api.list_namespaced_pod.side_effect = ApiException(status=503, reason="Service Unavailable")

        with pytest.raises(ExecTransportError, match="503"):
            await KubePodLister(core_api, KubeRedisConfig(namespace="redis")).list_pods()

    @pytest.mark.asyncio
    async def test_kube_lister_unreachable(self, core_api):
        core_api.list_namespaced_pod.side_effect = MaxRetryError(None, "/api/v1/namespaces/redis/pods")

        with pytest.raises(ExecTransportError, match="namespace redis"):
            await KubePodLister(core_api, KubeRedisConfig(namespace="redis")).list_pods()

    @pytest.mark.asyncio
    async def test_kube_lister_get_unreachable(self, core_api):
        core_api.read_namespaced_pod.side_effect = ProtocolError("Connection aborted.")

        with pytest.raises(ExecTransportError):
            await KubePodLister(core_api).get("redis-0")

    @pytest.mark.asyncio
    async def test_static_lister(self, pods):
        """StaticPodLister returns a copy of its pods."""
        lister = StaticPodLister(pods)
        listed = await lister.list_pods()
        assert listed == pods
        assert listed is not lister.pods


class TestRedisCli:
    """Test redis-cli invocation through a runner."""

    @pytest.mark.asyncio
    async def test_builds_argv(self, auth_config, pod):
        """Port, password and command are passed as separate arguments."""
        runner = MagicMock()
        runner.run = AsyncMock(return_value="OK\n")
        cli = RedisCli.for_redis(runner, auth_config)

        await cli.call(pod, "CLUSTER", "NODES")

        runner.run.assert_awaited_once_with(
            pod, "redis",
            ["redis-cli", "-p", "6379", "-a", "s3cret", "--no-auth-warning", "CLUSTER", "NODES"],
        )

    @pytest.mark.asyncio
    async def test_sentinel_settings(self, auth_config, pod):
        """Sentinel calls use the Sentinel port, password and container."""
        runner = MagicMock()
        runner.run = AsyncMock(return_value="")
        cli = RedisCli.for_sentinel(runner, auth_config)

        await cli.call(pod, "SENTINEL", "MASTER", "mymaster")

        _, container, argv = runner.run.await_args.args
        assert container == "sentinel"
        assert argv[:6] == ["redis-cli", "-p", "26379", "-a", "sentinel-pw", "--no-auth-warning"]

    @pytest.mark.asyncio
    async def test_remote_host(self, fast_config, pod):
        """host/port target another node from inside the pod."""
        runner = MagicMock()
        runner.run = AsyncMock(return_value="PONG\n")
        cli = RedisCli.for_redis(runner, fast_config)

        await cli.call(pod, "PING", host="10.0.0.99", port=7000)

        argv = runner.run.await_args.args[2]
        assert argv == ["redis-cli", "-h", "10.0.0.99", "-p", "7000", "PING"]

    @pytest.mark.asyncio
    async def test_container_override(self, auth_config, pod):
        runner = MagicMock()
        runner.run = AsyncMock(return_value="PONG\n")
        cli = RedisCli.for_redis(runner, auth_config)

        await cli.call(pod, "PING", container="sidecar")

        assert runner.run.await_args.args[1] == "sidecar"

    @pytest.mark.asyncio
    async def test_error_reply_raises(self, fast_config, pod):
        """An error reply on a zero exit is a RedisCommandError."""
        runner = MagicMock()
        runner.run = AsyncMock(return_value="ERR No such master with that name\n")
        cli = RedisCli.for_sentinel(runner, fast_config)

        with pytest.raises(RedisCommandError) as exc_info:
            await cli.call(pod, "SENTINEL", "MASTER", "nope")

        assert exc_info.value.code == "ERR"
        assert exc_info.value.pod == "redis-0"
        assert exc_info.value.command[-3:] == ["SENTINEL", "MASTER", "nope"]

    @pytest.mark.asyncio
    async def test_error_reply_with_non_zero_exit(self, fast_config, pod):
        """redis-cli exiting non-zero on an error reply is still a RedisCommandError."""
        runner = MagicMock()
        runner.run = AsyncMock(side_effect=NonZeroExit(
            1, stdout="NOGOODSLAVE No suitable replica to promote\n", pod="redis-0",
        ))
        cli = RedisCli.for_sentinel(runner, fast_config)

        with pytest.raises(RedisCommandError) as exc_info:
            await cli.call(pod, "SENTINEL", "FAILOVER", "mymaster", retry=False)

        assert exc_info.value.code == "NOGOODSLAVE"

    @pytest.mark.asyncio
    async def test_plain_non_zero_exit_propagates(self, fast_config, pod):
        """Non-zero exits without an error reply stay ExecFailures."""
        runner = MagicMock()
        runner.run = AsyncMock(side_effect=NonZeroExit(127, stderr="redis-cli: not found"))
        cli = RedisCli.for_redis(runner, fast_config)

        with pytest.raises(NonZeroExit):
            await cli.call(pod, "PING")

        assert runner.run.await_count == 1

    @pytest.mark.asyncio
    async def test_redis_command_error_is_response_error(self, fast_config, pod):
        """RedisCommandError fits redis-py's exception hierarchy."""
        from redis.exceptions import ResponseError

        runner = MagicMock()
        runner.run = AsyncMock(return_value="ERR unknown command\n")
        cli = RedisCli.for_redis(runner, fast_config)

        with pytest.raises(ResponseError):
            await cli.call(pod, "BOGUS")

    @pytest.mark.asyncio
    async def test_transport_errors_retried(self, fast_config, pod):
        """Read-only calls are retried on transport errors."""
        runner = MagicMock()
        runner.run = AsyncMock(side_effect=[
            ExecTransportError("stream reset", pod="redis-0"),
            "PONG\n",
        ])
        cli = RedisCli.for_redis(runner, fast_config)

        assert await cli.call(pod, "PING") == "PONG\n"
        assert runner.run.await_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_when_disabled(self, fast_config, pod):
        """Commands with side effects are sent at most once."""
        runner = MagicMock()
        runner.run = AsyncMock(side_effect=ExecTransportError("stream reset", pod="redis-0"))
        cli = RedisCli.for_sentinel(runner, fast_config)

        with pytest.raises(ExecTransportError):
            await cli.call(pod, "SENTINEL", "FAILOVER", "mymaster", retry=False)

        assert runner.run.await_count == 1
