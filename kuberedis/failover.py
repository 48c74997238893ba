"""
Failover orchestration for Sentinel groups and Redis Cluster masters.

Each call drives one ``FailoverAttempt`` through a small state machine::

    INITIATED --command ok--> POLLING --converged--> SUCCEEDED
        |                        |
        | command failed         | budget exhausted
        v                        v
     ABORTED                 TIMED_OUT

The failover command is sent exactly once. A timed-out attempt is reported,
not retried: Redis may still be completing it, and a second command against
an election in progress causes churn.

Sentinel mode leaves the choice of replica to Sentinel, since
``SENTINEL FAILOVER`` takes no replica argument. Cluster mode chooses the
replica itself when the caller does not name one:

1. only replicas of the target master that map to a pod, are not flagged
   ``fail``/``fail?`` and have a connected link are eligible;
2. the highest ``slave_repl_offset`` (``INFO replication``) wins;
3. ties, and replicas whose offset could not be read, are ordered by pod
   name and then node ID.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from kuberedis.config import KubeRedisConfig
from kuberedis.errors import (
    ConvergenceTimeout,
    ExecFailure,
    InvalidFailoverTarget,
    KubeRedisError,
    ParseError,
    RedisCommandError,
)
from kuberedis.executor import PodCommandRunner, PodLister
from kuberedis.models import (
    ROLE_MASTER,
    ClusterGraph,
    FailoverAttempt,
    FailoverState,
    PodRef,
    RedisNode,
    SentinelGroup,
)
from kuberedis.retry import PollPolicy
from kuberedis.sentinel import SentinelView
from kuberedis.topology import ClusterTopology

CLUSTER_FAILOVER_OPTIONS = ("FORCE", "TAKEOVER")

# Errors that make a single convergence poll inconclusive
POLL_ERRORS = (ExecFailure, RedisCommandError, ParseError)


@dataclass
class FailoverResult:
    """
    Outcome of one orchestration call.

    Attributes:
        outcome: Terminal state of the attempt
        attempt: The attempt record (target, candidate, polls, start time)
        new_master: Pod observed as master after convergence
        view: Last topology observed (SentinelGroup or ClusterGraph)
        error: Why the attempt aborted or timed out
    """
    outcome: FailoverState
    attempt: FailoverAttempt
    new_master: Optional[PodRef] = None
    view: Any = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is FailoverState.SUCCEEDED

    def raise_for_outcome(self) -> None:
        """Raise the recorded error unless the failover succeeded."""
        if self.error is not None:
            raise self.error


class FailoverOrchestrator:
    """
    Issues a failover and waits for the new role assignment.

    Pods are listed again before acting and on every poll, so a pod
    rescheduled with a new IP mid-failover is still recognised.

    Cancelling the task running ``sentinel_failover`` or ``cluster_failover``
    (directly or via ``asyncio.wait_for``) stops it at the next exec or poll
    sleep. Nothing is left half-written locally; a failover command already
    sent cannot be recalled.
    """

    def __init__(
        self,
        runner: PodCommandRunner,
        pods: PodLister,
        config: Optional[KubeRedisConfig] = None,
        policy: Optional[PollPolicy] = None,
        sentinel_view: Optional[SentinelView] = None,
        topology: Optional[ClusterTopology] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or KubeRedisConfig()
        self.pods = pods
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.policy = policy or PollPolicy(
            max_attempts=self.config.poll_max_attempts,
            interval=self.config.poll_interval,
        )
        self.sentinel = sentinel_view or SentinelView(runner, self.config, logger=self.logger)
        self.topology = topology or ClusterTopology(runner, self.config, logger=self.logger)

    def _abort(
        self,
        attempt: FailoverAttempt,
        error: Exception,
        view: Any = None,
    ) -> FailoverResult:
        attempt.state = FailoverState.ABORTED
        self.logger.error(f"Failover of {attempt.target} aborted: {error}")
        return FailoverResult(FailoverState.ABORTED, attempt, view=view, error=error)

    def _timeout(self, attempt: FailoverAttempt, view: Any) -> FailoverResult:
        attempt.state = FailoverState.TIMED_OUT
        error = ConvergenceTimeout(attempt, view)
        self.logger.error(str(error))
        return FailoverResult(FailoverState.TIMED_OUT, attempt, view=view, error=error)

    def _succeed(
        self,
        attempt: FailoverAttempt,
        new_master: PodRef,
        view: Any,
    ) -> FailoverResult:
        attempt.state = FailoverState.SUCCEEDED
        elapsed = (datetime.now(timezone.utc) - attempt.started_at).total_seconds()
        self.logger.info(
            f"Failover of {attempt.target} converged on {new_master.name} "
            f"after {attempt.polls} polls ({elapsed:.1f}s)"
        )
        return FailoverResult(FailoverState.SUCCEEDED, attempt, new_master=new_master, view=view)

    # =========================================================================
    # Sentinel
    # =========================================================================

    async def sentinel_failover(
        self,
        sentinel_pod: PodRef,
        master_name: str,
        check_quorum: bool = False,
        verify_role: bool = True,
    ) -> FailoverResult:
        """
        Fail ``master_name`` over to a replica chosen by Sentinel.

        Args:
            sentinel_pod: Pod running a Sentinel that monitors ``master_name``
            master_name: Name the master is monitored under
            check_quorum: Run ``SENTINEL CKQUORUM`` first and abort on NOQUORUM
            verify_role: Require the new master pod to report ``ROLE master``

        Returns:
            FailoverResult; SUCCEEDED once Sentinel reports a former replica
            as master, ABORTED if the view or command failed before any poll,
            TIMED_OUT when the poll budget ran out
        """
        attempt = FailoverAttempt(target=master_name, mode="sentinel")
        before: Optional[SentinelGroup] = None
        try:
            pods = await self.pods.list_pods()
            before = await self.sentinel.fetch(sentinel_pod, master_name, pods)
            if check_quorum:
                await self.sentinel.check_quorum(sentinel_pod, master_name)
            self.logger.info(
                f"Initiating Sentinel failover of {master_name} "
                f"(master {before.master_address}, {len(before.replicas)} replicas)"
            )
            await self.sentinel.failover(sentinel_pod, master_name)
        except KubeRedisError as e:
            return self._abort(attempt, e, view=before)

        attempt.state = FailoverState.POLLING
        former_replicas = {p.name for p in before.replicas}
        view: SentinelGroup = before
        async for n in self.policy.attempts():
            attempt.polls = n
            try:
                pods = await self.pods.list_pods()
                view = await self.sentinel.fetch(sentinel_pod, master_name, pods)
                if not self._sentinel_converged(before, view, former_replicas):
                    continue
                if verify_role and await self.sentinel.node_role(view.master) != ROLE_MASTER:
                    self.logger.debug(f"{view.master.name} not yet reporting master role")
                    continue
            except POLL_ERRORS as e:
                self.logger.warning(f"Poll {n}/{self.policy.max_attempts} of {master_name} failed: {e}")
                continue
            attempt.candidate = view.master
            return self._succeed(attempt, view.master, view)

        return self._timeout(attempt, view)

    @staticmethod
    def _sentinel_converged(
        before: SentinelGroup,
        view: SentinelGroup,
        former_replicas: set,
    ) -> bool:
        if view.master is None or view.master_address == before.master_address:
            return False
        if former_replicas and view.master.name not in former_replicas:
            return False
        return ROLE_MASTER in view.flags

    # =========================================================================
    # Cluster
    # =========================================================================

    async def select_replica(
        self,
        graph: ClusterGraph,
        master: RedisNode,
        preferred: Optional[str] = None,
    ) -> RedisNode:
        """
        Pick the replica of ``master`` to promote.

        Args:
            graph: Current cluster graph
            master: Master being failed over
            preferred: Pod name or node ID of the replica the caller wants

        Raises:
            InvalidFailoverTarget: ``preferred`` is not a usable replica of
                ``master``, or no replica is eligible
        """
        replicas = graph.replicas_of(master.node_id)
        if preferred is not None:
            for replica in replicas:
                if preferred in (replica.node_id, replica.pod_name):
                    if replica.pod is None:
                        raise InvalidFailoverTarget(
                            f"replica {preferred} at {replica.address} matches no pod"
                        )
                    return replica
            raise InvalidFailoverTarget(
                f"{preferred} is not a replica of {master.node_id}"
            )

        eligible = [
            r for r in replicas
            if r.pod is not None and not r.is_failing and r.link_state == "connected"
        ]
        if not eligible:
            raise InvalidFailoverTarget(f"master {master.node_id} has no healthy replica")

        offsets = await asyncio.gather(
            *(self.topology.replication_offset(r.pod) for r in eligible)
        )

        def rank(item):
            replica, offset = item
            return (-(offset if offset is not None else -1), replica.pod_name, replica.node_id)

        chosen, offset = sorted(zip(eligible, offsets), key=rank)[0]
        self.logger.info(
            f"Selected replica {chosen.pod_name} ({chosen.node_id}, offset={offset}) "
            f"for master {master.node_id}"
        )
        return chosen

    async def cluster_failover(
        self,
        seed: PodRef,
        master_node_id: str,
        replica: Optional[str] = None,
        option: Optional[str] = None,
    ) -> FailoverResult:
        """
        Promote a replica of ``master_node_id`` with ``CLUSTER FAILOVER``.

        Args:
            seed: Pod to read the cluster topology from
            master_node_id: Node ID of the master to replace
            replica: Pod name or node ID of the replica to promote
                (default: chosen deterministically, see module docs)
            option: ``FORCE`` or ``TAKEOVER``

        Returns:
            FailoverResult; SUCCEEDED once the replica reports itself master
            of the old master's slots
        """
        if option is not None and option.upper() not in CLUSTER_FAILOVER_OPTIONS:
            raise ValueError(f"option must be one of {CLUSTER_FAILOVER_OPTIONS}, got {option!r}")

        attempt = FailoverAttempt(target=master_node_id, mode="cluster")
        graph: Optional[ClusterGraph] = None
        try:
            pods = await self.pods.list_pods()
            graph = await self.topology.discover(seed, pods, probe_unresolved=False)
            master = graph.node(master_node_id)
            if master is None:
                raise InvalidFailoverTarget(f"node {master_node_id} is not in the cluster")
            if not master.is_master:
                raise InvalidFailoverTarget(f"node {master_node_id} is not a master")
            chosen = await self.select_replica(graph, master, replica)
            attempt.candidate = chosen.pod
            self.logger.info(
                f"Initiating cluster failover of {master_node_id} to {chosen.pod_name}"
            )
            await self.topology.failover(chosen.pod, option.upper() if option else None)
        except KubeRedisError as e:
            return self._abort(attempt, e, view=graph)

        attempt.state = FailoverState.POLLING
        slots = master.slot_set()
        view: ClusterGraph = graph
        async for n in self.policy.attempts():
            attempt.polls = n
            try:
                pods = await self.pods.list_pods()
                candidate = self._refresh(chosen.pod, pods)
                view = await self.topology.discover(candidate, pods, probe_unresolved=False)
            except POLL_ERRORS as e:
                self.logger.warning(f"Poll {n}/{self.policy.max_attempts} of {master_node_id} failed: {e}")
                continue
            me = view.myself()
            if me is not None and me.is_master and slots <= me.slot_set():
                return self._succeed(attempt, me.pod or candidate, view)

        return self._timeout(attempt, view)

    @staticmethod
    def _refresh(pod: PodRef, pods: Sequence[PodRef]) -> PodRef:
        for candidate in pods:
            if candidate.name == pod.name:
                return candidate
        return pod
