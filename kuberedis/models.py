"""
Data model shared by the parser, topology views and failover orchestrator.

All discovery results are immutable snapshots built fresh per call. The only
mutable record is ``FailoverAttempt``, which lives for the duration of one
orchestration call.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from redis.crc import REDIS_CLUSTER_HASH_SLOTS, key_slot

ROLE_MASTER = "master"
ROLE_SLAVE = "slave"
ROLE_UNKNOWN = "unknown"


def master_flags_healthy(flags: Tuple[str, ...]) -> bool:
    """True when Sentinel flags a master as up: ``master`` and neither ``s_down`` nor ``o_down``."""
    return ROLE_MASTER in flags and "s_down" not in flags and "o_down" not in flags


@dataclass(frozen=True)
class PodRef:
    """
    Snapshot of a pod hosting a Redis or Sentinel process.

    Attributes:
        name: Pod name
        namespace: Pod namespace
        container: Container running the process (None = first container)
        ip: Pod IP from status, if assigned
        host: Name of the Kubernetes node the pod is scheduled on
    """
    name: str
    namespace: str = "default"
    container: Optional[str] = None
    ip: Optional[str] = None
    host: Optional[str] = None


@dataclass(frozen=True)
class SlotRange:
    """Inclusive range of hash slots."""
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start + 1

    def __contains__(self, slot: object) -> bool:
        return isinstance(slot, int) and self.start <= slot <= self.end

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class SlotMigration:
    """In-flight slot migration marker (``[slot->-id]`` or ``[slot-<-id]``)."""
    slot: int
    direction: str  # "migrating" or "importing"
    node_id: str


@dataclass(frozen=True)
class RedisNode:
    """
    One row of ``CLUSTER NODES``, optionally joined to the pod hosting it.

    ``pod`` is None when the advertised IP matches no known pod.
    """
    node_id: str
    ip: str
    port: int
    bus_port: Optional[int] = None
    hostname: Optional[str] = None
    flags: Tuple[str, ...] = ()
    role: str = ROLE_UNKNOWN
    master_id: Optional[str] = None
    ping_sent: int = 0
    pong_recv: int = 0
    config_epoch: int = 0
    link_state: str = "connected"
    slots: Tuple[SlotRange, ...] = ()
    migrations: Tuple[SlotMigration, ...] = ()
    pod: Optional[PodRef] = None

    @property
    def address(self) -> str:
        return f"{self.ip}:{self.port}"

    @property
    def is_master(self) -> bool:
        return self.role == ROLE_MASTER

    @property
    def is_myself(self) -> bool:
        return "myself" in self.flags

    @property
    def is_failing(self) -> bool:
        return "fail" in self.flags or "fail?" in self.flags

    @property
    def slot_count(self) -> int:
        return sum(len(r) for r in self.slots)

    @property
    def pod_name(self) -> Optional[str]:
        return self.pod.name if self.pod else None

    @property
    def pod_ip(self) -> Optional[str]:
        return self.pod.ip if self.pod else None

    @property
    def host_name(self) -> Optional[str]:
        return self.pod.host if self.pod else None

    def owns_slot(self, slot: int) -> bool:
        return any(slot in r for r in self.slots)

    def slot_set(self) -> frozenset:
        return frozenset(s for r in self.slots for s in range(r.start, r.end + 1))


@dataclass(frozen=True)
class SkippedLine:
    """A reply line the parser could not turn into a record."""
    line_no: int
    text: str
    reason: str


@dataclass(frozen=True)
class ResolutionMismatch:
    """A Redis address reported by Redis or Sentinel that matches no known pod."""
    address: str
    node_id: Optional[str] = None


@dataclass(frozen=True)
class ClusterNodesReply:
    """Parsed ``CLUSTER NODES`` reply: well-formed rows plus skipped lines."""
    nodes: Tuple[RedisNode, ...] = ()
    skipped: Tuple[SkippedLine, ...] = ()


@dataclass(frozen=True)
class ClusterGraph:
    """
    Redis Cluster node graph keyed by both node ID and pod identity.

    Attributes:
        nodes: Every parsed node, in reply order
        skipped: Reply lines that could not be parsed
        unresolved: Nodes whose address matched no known pod
        liveness: Probe outcome for unresolved nodes, by node ID
        confirmed_roles: Role reported by each resolved pod, by node ID
    """
    nodes: Tuple[RedisNode, ...] = ()
    skipped: Tuple[SkippedLine, ...] = ()
    unresolved: Tuple[ResolutionMismatch, ...] = ()
    liveness: Mapping[str, bool] = field(default_factory=dict)
    confirmed_roles: Mapping[str, str] = field(default_factory=dict)

    @property
    def masters(self) -> List[RedisNode]:
        return [n for n in self.nodes if n.is_master]

    @property
    def replicas(self) -> List[RedisNode]:
        return [n for n in self.nodes if n.role == ROLE_SLAVE]

    @property
    def slots_covered(self) -> int:
        """Number of distinct hash slots owned by some master."""
        covered = set()
        for node in self.masters:
            covered |= node.slot_set()
        return len(covered)

    @property
    def is_degraded(self) -> bool:
        return self.slots_covered != REDIS_CLUSTER_HASH_SLOTS

    @property
    def replica_map(self) -> Dict[str, List[str]]:
        """Master node ID -> replica node IDs."""
        mapping: Dict[str, List[str]] = {n.node_id: [] for n in self.masters}
        for node in self.replicas:
            if node.master_id:
                mapping.setdefault(node.master_id, []).append(node.node_id)
        return mapping

    def node(self, node_id: str) -> Optional[RedisNode]:
        for n in self.nodes:
            if n.node_id == node_id:
                return n
        return None

    def node_for_pod(self, pod_name: str) -> Optional[RedisNode]:
        for n in self.nodes:
            if n.pod_name == pod_name:
                return n
        return None

    def replicas_of(self, node_id: str) -> List[RedisNode]:
        return [n for n in self.replicas if n.master_id == node_id]

    def myself(self) -> Optional[RedisNode]:
        for n in self.nodes:
            if n.is_myself:
                return n
        return None

    def owner_of(self, key: str) -> Optional[RedisNode]:
        """Master owning the hash slot of ``key``, or None if unassigned."""
        slot = key_slot(key.encode("utf-8"))
        for node in self.masters:
            if node.owns_slot(slot):
                return node
        return None

    def listing(self) -> List[RedisNode]:
        """
        Nodes in display order: pod name ascending, ties by node ID.

        Nodes without a pod come after all resolved nodes.
        """
        return sorted(
            self.nodes,
            key=lambda n: (n.pod is None, n.pod_name or "", n.node_id),
        )


@dataclass(frozen=True)
class ClusterInfo:
    """Parsed ``CLUSTER INFO`` reply."""
    state: str
    slots_assigned: int = 0
    slots_ok: int = 0
    slots_pfail: int = 0
    slots_fail: int = 0
    known_nodes: int = 0
    size: int = 0
    current_epoch: int = 0
    my_epoch: int = 0
    raw: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_ok(self) -> bool:
        return self.state == "ok"


@dataclass(frozen=True)
class SentinelMasterInfo:
    """Parsed ``SENTINEL MASTER <name>`` reply."""
    name: str
    ip: str
    port: int
    quorum: int
    flags: Tuple[str, ...] = ()
    num_slaves: int = 0
    num_other_sentinels: int = 0
    raw: Mapping[str, str] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"{self.ip}:{self.port}"

    @property
    def is_healthy(self) -> bool:
        return master_flags_healthy(self.flags)


@dataclass(frozen=True)
class SentinelReplicaInfo:
    """One replica entry of a ``SENTINEL SLAVES <name>`` reply."""
    name: str
    ip: str
    port: int
    flags: Tuple[str, ...] = ()
    master_link_status: Optional[str] = None
    repl_offset: int = 0
    priority: int = 100
    raw: Mapping[str, str] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"{self.ip}:{self.port}"

    @property
    def is_down(self) -> bool:
        return "s_down" in self.flags or "o_down" in self.flags or "disconnected" in self.flags


@dataclass(frozen=True)
class SentinelGroup:
    """
    Sentinel's view of one monitored master and its replicas.

    Attributes:
        master_name: Name the master is monitored under
        master: Pod hosting the current master (None if unresolved)
        master_address: ``ip:port`` Sentinel reports for the master
        replicas: Pods hosting replicas that resolved to a known pod
        quorum: Sentinels required to agree a master is down
        sentinel_count: Sentinels monitoring the master, including the queried one
        flags: Master flags as reported by Sentinel
        replica_info: Raw per-replica records, resolved or not
        unresolved: Reported addresses that matched no known pod
    """
    master_name: str
    master: Optional[PodRef]
    master_address: str
    replicas: Tuple[PodRef, ...] = ()
    quorum: int = 0
    sentinel_count: int = 1
    flags: Tuple[str, ...] = ()
    replica_info: Tuple[SentinelReplicaInfo, ...] = ()
    unresolved: Tuple[ResolutionMismatch, ...] = ()

    @property
    def is_healthy(self) -> bool:
        return master_flags_healthy(self.flags)


class FailoverState(str, Enum):
    INITIATED = "initiated"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed-out"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            FailoverState.SUCCEEDED,
            FailoverState.TIMED_OUT,
            FailoverState.ABORTED,
        )


@dataclass
class FailoverAttempt:
    """
    Transient record of one failover orchestration run.

    Attributes:
        target: Sentinel master name or cluster master node ID
        mode: ``"sentinel"`` or ``"cluster"``
        candidate: Replica chosen or supplied for promotion, if any
        started_at: UTC time the attempt was created
        polls: Convergence polls performed so far
        state: Current state machine position
    """
    target: str
    mode: str
    candidate: Optional[PodRef] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    polls: int = 0
    state: FailoverState = FailoverState.INITIATED

    @property
    def outcome(self) -> Optional[FailoverState]:
        return self.state if self.state.is_terminal else None
