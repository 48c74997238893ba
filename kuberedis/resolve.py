"""Join Redis-reported addresses to the pods that host them."""

import ipaddress
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from kuberedis.models import PodRef, RedisNode, ResolutionMismatch

LOOPBACK = ("", "127.0.0.1", "::1")


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class PodIndex:
    """
    Lookup of pods by IP and, for hostname-announcing deployments, by name.

    When several pods report the same IP (pods on the host network) the one
    with the smallest name wins, so the result does not depend on the order
    pods were listed in.
    """

    def __init__(self, pods: Iterable[PodRef]):
        self.by_ip: Dict[str, PodRef] = {}
        self.by_name: Dict[str, PodRef] = {}
        for pod in sorted(pods, key=lambda p: p.name):
            self.by_name.setdefault(pod.name, pod)
            if pod.ip:
                self.by_ip.setdefault(pod.ip, pod)

    def match(self, host: Optional[str]) -> Optional[PodRef]:
        """Pod whose IP equals ``host``, or whose name is its first DNS label."""
        if not host:
            return None
        if host in self.by_ip:
            return self.by_ip[host]
        if _is_ip(host):
            return None
        return self.by_name.get(host.split(".", 1)[0])


def resolve_nodes(
    nodes: Sequence[RedisNode],
    pods: Iterable[PodRef],
    seed: Optional[PodRef] = None,
) -> Tuple[Tuple[RedisNode, ...], Tuple[ResolutionMismatch, ...]]:
    """
    Attach a ``PodRef`` to every node whose address matches a known pod.

    Unmatched nodes are kept with ``pod=None`` and listed as mismatches. The
    ``myself`` row of a node that has not learned its own address yet is
    attributed to the seed pod it was read from.
    """
    index = PodIndex(pods)
    resolved: List[RedisNode] = []
    unresolved: List[ResolutionMismatch] = []
    for node in nodes:
        pod = index.match(node.ip) or index.match(node.hostname)
        if pod is None and seed is not None and node.is_myself and node.ip in LOOPBACK:
            pod = seed
        if pod is None:
            unresolved.append(ResolutionMismatch(address=node.address, node_id=node.node_id))
        resolved.append(replace(node, pod=pod))
    return tuple(resolved), tuple(unresolved)
