"""
kuberedis: Redis Cluster and Sentinel topology on Kubernetes.

Maps Redis nodes to the pods that host them and drives master-to-replica
failovers by running redis-cli inside the pods through the Kubernetes exec
API. Every call rediscovers topology; nothing is cached between calls.
"""

from kuberedis.config import KubeRedisConfig
from kuberedis.errors import (
    ContainerNotFound,
    ConvergenceTimeout,
    ExecFailure,
    ExecTransportError,
    InvalidFailoverTarget,
    KubeRedisError,
    NonZeroExit,
    ParseError,
    PodNotFound,
    PodNotRunning,
    RedisCommandError,
)
from kuberedis.executor import (
    KubePodCommandRunner,
    KubePodLister,
    PodCommandRunner,
    PodLister,
    RedisCli,
    StaticPodLister,
)
from kuberedis.failover import FailoverOrchestrator, FailoverResult
from kuberedis.models import (
    ClusterGraph,
    ClusterInfo,
    FailoverAttempt,
    FailoverState,
    PodRef,
    RedisNode,
    ResolutionMismatch,
    SentinelGroup,
    SkippedLine,
    SlotRange,
)
from kuberedis.retry import PollPolicy, with_exec_retry
from kuberedis.sentinel import SentinelView
from kuberedis.topology import ClusterTopology

__version__ = "0.1.0"

__all__ = [
    "ClusterGraph",
    "ClusterInfo",
    "ClusterTopology",
    "ContainerNotFound",
    "ConvergenceTimeout",
    "ExecFailure",
    "ExecTransportError",
    "FailoverAttempt",
    "FailoverOrchestrator",
    "FailoverResult",
    "FailoverState",
    "InvalidFailoverTarget",
    "KubePodCommandRunner",
    "KubePodLister",
    "KubeRedisConfig",
    "KubeRedisError",
    "NonZeroExit",
    "ParseError",
    "PodCommandRunner",
    "PodLister",
    "PodNotFound",
    "PodNotRunning",
    "PodRef",
    "PollPolicy",
    "RedisCli",
    "RedisCommandError",
    "RedisNode",
    "ResolutionMismatch",
    "SentinelGroup",
    "SentinelView",
    "SkippedLine",
    "SlotRange",
    "StaticPodLister",
    "with_exec_retry",
]
