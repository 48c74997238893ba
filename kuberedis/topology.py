"""
Redis Cluster topology discovery.

``ClusterTopology.discover`` reads ``CLUSTER NODES`` from a seed pod, joins
each row to the pod hosting it by IP, and optionally fans out to confirm
liveness of unmatched nodes and the role of matched ones. Fan-out tasks are
independent and read-only; each returns a value the caller merges.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from kuberedis.config import KubeRedisConfig
from kuberedis.errors import ExecFailure, ExecTransportError, RedisCommandError, ParseError
from kuberedis.executor import PodCommandRunner, RedisCli
from kuberedis.models import (
    ROLE_UNKNOWN,
    ClusterGraph,
    ClusterInfo,
    ClusterNodesReply,
    PodRef,
    RedisNode,
)
from kuberedis.parser import parse_cluster_info, parse_cluster_nodes, parse_info, parse_role
from kuberedis.resolve import resolve_nodes


class ClusterTopology:
    """
    Discovers the node graph of a Redis Cluster running in pods.

    Example::

        topology = ClusterTopology(runner, config)
        graph = await topology.discover(seed, await lister.list_pods())
        for node in graph.listing():
            print(node.pod_name, node.node_id, node.is_master, node.slot_count)
    """

    def __init__(
        self,
        runner: PodCommandRunner,
        config: Optional[KubeRedisConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or KubeRedisConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.cli = RedisCli.for_redis(runner, self.config, logger=self.logger)

    async def cluster_nodes(self, pod: PodRef) -> ClusterNodesReply:
        """Run ``CLUSTER NODES`` in ``pod`` and parse the reply."""
        reply = await self.cli.call(pod, "CLUSTER", "NODES")
        return parse_cluster_nodes(reply)

    async def info(self, pod: PodRef) -> ClusterInfo:
        """Run ``CLUSTER INFO`` in ``pod``."""
        return parse_cluster_info(await self.cli.call(pod, "CLUSTER", "INFO"))

    async def discover(
        self,
        seed: PodRef,
        pods: Sequence[PodRef],
        probe_unresolved: bool = True,
        confirm_roles: bool = False,
    ) -> ClusterGraph:
        """
        Build the cluster graph as seen from ``seed``.

        Args:
            seed: Pod to read ``CLUSTER NODES`` from
            pods: Candidate pods to resolve node addresses against
            probe_unresolved: PING nodes that match no pod from the seed
            confirm_roles: Ask every resolved pod for its ``ROLE``

        Returns:
            ClusterGraph; unparseable rows and unmatched nodes are reported
            on it rather than raised

        Raises:
            ExecFailure: the seed pod could not be queried
            RedisCommandError: the seed answered with an error
        """
        reply = await self.cluster_nodes(seed)
        for skipped in reply.skipped:
            self.logger.warning(
                f"Skipped CLUSTER NODES line {skipped.line_no} from {seed.name}: {skipped.reason}"
            )

        nodes, unresolved = resolve_nodes(reply.nodes, pods, seed=seed)
        for mismatch in unresolved:
            self.logger.warning(
                f"Node {mismatch.node_id} at {mismatch.address} matches no known pod"
            )

        liveness: Dict[str, bool] = {}
        if probe_unresolved and unresolved:
            targets = [n for n in nodes if n.pod is None]
            results = await asyncio.gather(*(self.probe(seed, n) for n in targets))
            liveness = dict(results)

        confirmed: Dict[str, str] = {}
        if confirm_roles:
            targets = [n for n in nodes if n.pod is not None]
            results = await asyncio.gather(*(self.confirm_role(n) for n in targets))
            confirmed = dict(results)

        graph = ClusterGraph(
            nodes=nodes,
            skipped=reply.skipped,
            unresolved=unresolved,
            liveness=liveness,
            confirmed_roles=confirmed,
        )
        self.logger.info(
            f"Discovered {len(graph.nodes)} nodes from {seed.name}: "
            f"{len(graph.masters)} masters, {len(graph.replicas)} replicas, "
            f"{graph.slots_covered} slots covered"
            + (" (degraded)" if graph.is_degraded else "")
        )
        return graph

    async def probe(self, seed: PodRef, node: RedisNode) -> Tuple[str, bool]:
        """
        Check from inside ``seed`` whether ``node`` answers PING.

        Transport errors are retried up to ``liveness_retries`` times; a
        refused connection or error reply counts as not alive.
        """
        if not node.ip:
            return node.node_id, False
        for attempt in range(1, self.config.liveness_retries + 1):
            try:
                reply = await self.cli.call(
                    seed, "PING", host=node.ip, port=node.port, retry=False
                )
            except ExecTransportError as e:
                self.logger.warning(
                    f"Probe {attempt}/{self.config.liveness_retries} of {node.address} failed: {e}"
                )
                continue
            except (ExecFailure, RedisCommandError):
                return node.node_id, False
            return node.node_id, reply.strip() == "PONG"
        return node.node_id, False

    async def confirm_role(self, node: RedisNode) -> Tuple[str, str]:
        """Ask the pod hosting ``node`` for its role (``unknown`` on failure)."""
        try:
            return node.node_id, parse_role(await self.cli.call(node.pod, "ROLE"))
        except (ExecFailure, RedisCommandError, ParseError) as e:
            self.logger.warning(f"Could not confirm role of {node.pod_name}: {e}")
            return node.node_id, ROLE_UNKNOWN

    async def replication_offset(self, pod: PodRef) -> Optional[int]:
        """Replica's processed replication offset, or None if unavailable."""
        try:
            info = parse_info(await self.cli.call(pod, "INFO", "replication"))
        except (ExecFailure, RedisCommandError) as e:
            self.logger.warning(f"Could not read replication offset of {pod.name}: {e}")
            return None
        try:
            return int(info["slave_repl_offset"])
        except (KeyError, ValueError):
            return None

    async def failover(self, replica: PodRef, option: Optional[str] = None) -> None:
        """Send ``CLUSTER FAILOVER [FORCE|TAKEOVER]`` to ``replica``, once."""
        args: List[str] = ["CLUSTER", "FAILOVER"]
        if option:
            args.append(option)
        await self.cli.call(replica, *args, retry=False)
