"""
Sentinel view of a monitored master and its replicas, resolved to pods.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from kuberedis.config import KubeRedisConfig
from kuberedis.executor import PodCommandRunner, RedisCli
from kuberedis.models import (
    PodRef,
    ResolutionMismatch,
    SentinelGroup,
    SentinelMasterInfo,
    SentinelReplicaInfo,
)
from kuberedis.parser import parse_role, parse_sentinel_master, parse_sentinel_replicas
from kuberedis.resolve import PodIndex


class SentinelView:
    """
    Queries one Sentinel pod for the state of a master name.

    Data-node commands (``ROLE``) go through a second redis-cli bound to the
    Redis port and container rather than Sentinel's.
    """

    def __init__(
        self,
        runner: PodCommandRunner,
        config: Optional[KubeRedisConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or KubeRedisConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.cli = RedisCli.for_sentinel(runner, self.config, logger=self.logger)
        self.redis_cli = RedisCli.for_redis(runner, self.config, logger=self.logger)

    async def master_info(self, sentinel_pod: PodRef, master_name: str) -> SentinelMasterInfo:
        """
        ``SENTINEL MASTER <name>``.

        Raises:
            RedisCommandError: Sentinel does not monitor ``master_name``
            ParseError: the reply is not a master description
        """
        reply = await self.cli.call(sentinel_pod, "SENTINEL", "MASTER", master_name)
        return parse_sentinel_master(reply)

    async def replicas_info(self, sentinel_pod: PodRef, master_name: str) -> List[SentinelReplicaInfo]:
        reply = await self.cli.call(sentinel_pod, "SENTINEL", "SLAVES", master_name)
        replicas, skipped = parse_sentinel_replicas(reply)
        for entry in skipped:
            self.logger.warning(
                f"Skipped replica entry {entry.text!r} for {master_name}: {entry.reason}"
            )
        return replicas

    async def fetch(
        self,
        sentinel_pod: PodRef,
        master_name: str,
        pods: Sequence[PodRef],
    ) -> SentinelGroup:
        """
        Current master and replicas of ``master_name``, resolved to pods.

        A master with no replicas is a valid single-node deployment.
        """
        master, replicas = await asyncio.gather(
            self.master_info(sentinel_pod, master_name),
            self.replicas_info(sentinel_pod, master_name),
        )
        index = PodIndex(pods)
        unresolved = []

        master_pod = index.match(master.ip)
        if master_pod is None:
            unresolved.append(ResolutionMismatch(address=master.address))
            self.logger.warning(f"Master {master_name} at {master.address} matches no known pod")

        replica_pods = []
        for replica in replicas:
            pod = index.match(replica.ip)
            if pod is None:
                unresolved.append(ResolutionMismatch(address=replica.address))
                self.logger.warning(
                    f"Replica of {master_name} at {replica.address} matches no known pod"
                )
            else:
                replica_pods.append(pod)

        return SentinelGroup(
            master_name=master.name,
            master=master_pod,
            master_address=master.address,
            replicas=tuple(sorted(replica_pods, key=lambda p: p.name)),
            quorum=master.quorum,
            sentinel_count=master.num_other_sentinels + 1,
            flags=master.flags,
            replica_info=tuple(replicas),
            unresolved=tuple(unresolved),
        )

    async def check_quorum(self, sentinel_pod: PodRef, master_name: str) -> str:
        """
        ``SENTINEL CKQUORUM <name>``.

        Raises:
            RedisCommandError: ``NOQUORUM``; the Sentinels could not authorize
                a failover
        """
        reply = await self.cli.call(sentinel_pod, "SENTINEL", "CKQUORUM", master_name)
        return reply.strip()

    async def failover(self, sentinel_pod: PodRef, master_name: str) -> None:
        """Send ``SENTINEL FAILOVER <name>`` once; never retried."""
        await self.cli.call(sentinel_pod, "SENTINEL", "FAILOVER", master_name, retry=False)

    async def node_role(self, pod: PodRef) -> str:
        """Role the Redis process in ``pod`` reports for itself."""
        return parse_role(await self.redis_cli.call(pod, "ROLE"))
