"""
Configuration for Redis-on-Kubernetes discovery and failover.

A single ``KubeRedisConfig`` value is created by the caller and passed into
every runner, view and orchestrator. Nothing in this package reads
configuration from module globals or the process environment.
"""

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class KubeRedisConfig:
    """
    Configuration for talking to Redis processes hosted in pods.

    Attributes:
        namespace: Namespace the Redis pods live in
        container: Container running redis-server (None = pod's first container)
        redis_port: Port redis-server listens on inside the pod
        password: Optional password for Redis data nodes
        sentinel_container: Container running redis-sentinel (None = first container)
        sentinel_port: Port redis-sentinel listens on inside the pod
        sentinel_password: Optional password for Sentinel processes
        redis_cli: Path of the redis-cli binary inside the container
        exec_timeout: Upper bound in seconds for a single remote exec
        retry_attempts: Transport retries for read-only commands
        retry_base_delay: Base delay for exponential backoff between retries
        liveness_retries: Probe attempts for cluster nodes that match no pod
        poll_interval: Seconds between failover convergence polls
        poll_max_attempts: Maximum number of convergence polls
        label_selector: Label selector used to list the managed pods
    """
    namespace: str = "default"
    container: Optional[str] = None
    redis_port: int = 6379
    password: Optional[str] = None
    sentinel_container: Optional[str] = None
    sentinel_port: int = 26379
    sentinel_password: Optional[str] = None
    redis_cli: str = "redis-cli"
    exec_timeout: float = 10.0
    retry_attempts: int = 2
    retry_base_delay: float = 0.2
    liveness_retries: int = 2
    poll_interval: float = 1.0
    poll_max_attempts: int = 30
    label_selector: Optional[str] = None

    def redis_cli_args(
        self,
        port: int,
        password: Optional[str] = None,
        host: Optional[str] = None,
    ) -> List[str]:
        """
        Build the redis-cli argv prefix for one invocation.

        Args:
            port: Port to connect to
            password: Password to authenticate with, if any
            host: Remote host to connect to instead of the local process

        Returns:
            Argument vector without the Redis command itself
        """
        argv = [self.redis_cli]
        if host:
            argv += ["-h", host]
        argv += ["-p", str(port)]
        if password:
            argv += ["-a", password, "--no-auth-warning"]
        return argv
