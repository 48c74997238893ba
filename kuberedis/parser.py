"""
Parsers for the textual replies redis-cli prints for administrative commands.

All functions are pure. Multi-row replies (``CLUSTER NODES``, ``SENTINEL
SLAVES``) never fail on a single bad row: the row is returned as a
``SkippedLine`` and parsing continues. Single-value replies (``CLUSTER INFO``,
``SENTINEL MASTER``) raise ``ParseError`` when they do not match.

redis-cli prints nested array replies flattened one element per line when its
output is not a terminal, so ``SENTINEL MASTER`` arrives as alternating key
and value lines.
"""

import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from redis.crc import REDIS_CLUSTER_HASH_SLOTS

from kuberedis.errors import ParseError
from kuberedis.models import (
    ROLE_MASTER,
    ROLE_SLAVE,
    ROLE_UNKNOWN,
    ClusterInfo,
    ClusterNodesReply,
    RedisNode,
    SentinelMasterInfo,
    SentinelReplicaInfo,
    SkippedLine,
    SlotMigration,
    SlotRange,
)

NODE_ID_RE = re.compile(r"^[0-9a-f]{40}$")
LINK_STATES = ("connected", "disconnected")

# Error codes Redis and Sentinel put in front of an error reply
ERROR_CODES = frozenset({
    "ERR", "WRONGTYPE", "NOAUTH", "NOPERM", "WRONGPASS", "NOQUORUM",
    "NOGOODSLAVE", "INPROG", "IDONTKNOW", "LOADING", "BUSY", "MASTERDOWN",
    "READONLY", "CLUSTERDOWN", "TRYAGAIN", "CROSSSLOT", "MISCONF",
    "NOREPLICAS", "EXECABORT", "OOM", "MOVED", "ASK",
})


def _lines(text: str) -> List[str]:
    return [line.rstrip("\r") for line in text.splitlines()]


def error_reply(text: str) -> Optional[str]:
    """
    Return the error reply contained in redis-cli output, or None.

    Handles both raw output (``ERR ...``) and the tty form (``(error) ERR ...``).
    """
    for line in _lines(text):
        line = line.strip()
        if not line:
            continue
        if line.startswith("(error)"):
            return line[len("(error)"):].strip()
        code = line.split(" ", 1)[0]
        if code in ERROR_CODES and " " in line:
            return line
        return None
    return None


# =========================================================================
# CLUSTER NODES
# =========================================================================

def _parse_address(field: str) -> Tuple[str, int, Optional[int], Optional[str]]:
    """Split ``ip:port[@busport][,hostname]``; raises ValueError when malformed."""
    addr, _, hostname = field.partition(",")
    hostport, sep, bus = addr.partition("@")
    host, colon, port = hostport.rpartition(":")
    if not colon:
        raise ValueError(f"address {field!r} has no port")
    bus_port = int(bus) if sep else None
    return host, int(port), bus_port, hostname or None


def _parse_slot_token(token: str) -> Union[SlotRange, SlotMigration]:
    if token.startswith("[") and token.endswith("]"):
        inner = token[1:-1]
        if "->-" in inner:
            slot, node_id = inner.split("->-", 1)
            return SlotMigration(int(slot), "migrating", node_id)
        if "-<-" in inner:
            slot, node_id = inner.split("-<-", 1)
            return SlotMigration(int(slot), "importing", node_id)
        raise ValueError(f"unknown migration marker {token!r}")
    start, sep, end = token.partition("-")
    r = SlotRange(int(start), int(end) if sep else int(start))
    if not 0 <= r.start <= r.end < REDIS_CLUSTER_HASH_SLOTS:
        raise ValueError(f"slot range {token!r} out of bounds")
    return r


def parse_cluster_nodes_line(line: str, line_no: int = 0) -> Union[RedisNode, SkippedLine]:
    """
    Parse one ``CLUSTER NODES`` row.

    Args:
        line: Row text
        line_no: 1-based position of the row in the reply, for reporting

    Returns:
        A ``RedisNode`` with no pod attached, or a ``SkippedLine`` saying why
        the row was rejected.
    """
    parts = line.split()
    if len(parts) < 8:
        return SkippedLine(line_no, line, f"expected at least 8 fields, got {len(parts)}")

    node_id, address, flags_field, master, ping, pong, epoch, link = parts[:8]
    if not NODE_ID_RE.match(node_id):
        return SkippedLine(line_no, line, f"invalid node id {node_id!r}")
    try:
        ip, port, bus_port, hostname = _parse_address(address)
    except ValueError:
        return SkippedLine(line_no, line, f"unparseable address {address!r}")
    if link not in LINK_STATES:
        return SkippedLine(line_no, line, f"unknown link state {link!r}")
    if master != "-" and not NODE_ID_RE.match(master):
        return SkippedLine(line_no, line, f"invalid master id {master!r}")
    try:
        ping_sent, pong_recv, config_epoch = int(ping), int(pong), int(epoch)
    except ValueError:
        return SkippedLine(line_no, line, "non-numeric ping/pong/epoch field")

    slots: List[SlotRange] = []
    migrations: List[SlotMigration] = []
    for token in parts[8:]:
        try:
            parsed = _parse_slot_token(token)
        except ValueError:
            return SkippedLine(line_no, line, f"unparseable slot token {token!r}")
        if isinstance(parsed, SlotMigration):
            migrations.append(parsed)
        else:
            slots.append(parsed)

    flags = tuple(flags_field.split(","))
    if ROLE_MASTER in flags:
        role = ROLE_MASTER
    elif ROLE_SLAVE in flags:
        role = ROLE_SLAVE
    else:
        role = ROLE_UNKNOWN
    if slots and role != ROLE_MASTER:
        return SkippedLine(line_no, line, f"{role} row owns slots")

    return RedisNode(
        node_id=node_id,
        ip=ip,
        port=port,
        bus_port=bus_port,
        hostname=hostname,
        flags=flags,
        role=role,
        master_id=None if master == "-" else master,
        ping_sent=ping_sent,
        pong_recv=pong_recv,
        config_epoch=config_epoch,
        link_state=link,
        slots=tuple(slots),
        migrations=tuple(migrations),
    )


def parse_cluster_nodes(text: str) -> ClusterNodesReply:
    """
    Parse a full ``CLUSTER NODES`` reply.

    Blank lines are ignored. Rows that fail to parse, and rows repeating a
    node ID already seen, are reported in ``skipped``.
    """
    nodes: List[RedisNode] = []
    skipped: List[SkippedLine] = []
    seen = set()
    for line_no, line in enumerate(_lines(text), start=1):
        if not line.strip():
            continue
        result = parse_cluster_nodes_line(line.strip(), line_no)
        if isinstance(result, SkippedLine):
            skipped.append(result)
        elif result.node_id in seen:
            skipped.append(SkippedLine(line_no, line.strip(), f"duplicate node id {result.node_id}"))
        else:
            seen.add(result.node_id)
            nodes.append(result)
    return ClusterNodesReply(nodes=tuple(nodes), skipped=tuple(skipped))


def format_slot_ranges(slots: Iterable[int]) -> List[SlotRange]:
    """Merge a collection of slot numbers into sorted contiguous ranges."""
    ranges: List[SlotRange] = []
    for slot in sorted(set(slots)):
        if ranges and ranges[-1].end + 1 == slot:
            ranges[-1] = SlotRange(ranges[-1].start, slot)
        else:
            ranges.append(SlotRange(slot, slot))
    return ranges


# =========================================================================
# Key/value replies
# =========================================================================

def parse_info(text: str) -> Dict[str, str]:
    """Parse an ``INFO`` or ``CLUSTER INFO`` reply into a flat dict."""
    info = {}
    for line in _lines(text):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        if sep:
            info[key] = value
    return info


def _int(raw: Dict[str, str], key: str, default: int = 0) -> int:
    try:
        return int(raw.get(key, default))
    except ValueError:
        return default


def parse_cluster_info(text: str) -> ClusterInfo:
    raw = parse_info(text)
    if "cluster_state" not in raw:
        raise ParseError("CLUSTER INFO reply has no cluster_state", text)
    return ClusterInfo(
        state=raw["cluster_state"],
        slots_assigned=_int(raw, "cluster_slots_assigned"),
        slots_ok=_int(raw, "cluster_slots_ok"),
        slots_pfail=_int(raw, "cluster_slots_pfail"),
        slots_fail=_int(raw, "cluster_slots_fail"),
        known_nodes=_int(raw, "cluster_known_nodes"),
        size=_int(raw, "cluster_size"),
        current_epoch=_int(raw, "cluster_current_epoch"),
        my_epoch=_int(raw, "cluster_my_epoch"),
        raw=raw,
    )


def _pairs(lines: Sequence[str], text: str) -> List[Tuple[str, str]]:
    if len(lines) % 2:
        raise ParseError(f"expected key/value pairs, got {len(lines)} lines", text)
    return list(zip(lines[::2], lines[1::2]))


def _reply_lines(text: str) -> List[str]:
    lines = _lines(text)
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def parse_sentinel_master(text: str) -> SentinelMasterInfo:
    """
    Parse a ``SENTINEL MASTER <name>`` reply.

    Raises:
        ParseError: the reply is not a key/value list with name, ip, port
            and quorum
    """
    raw = dict(_pairs(_reply_lines(text), text))
    missing = [k for k in ("name", "ip", "port", "quorum") if k not in raw]
    if missing:
        raise ParseError(f"SENTINEL MASTER reply missing {', '.join(missing)}", text)
    try:
        port, quorum = int(raw["port"]), int(raw["quorum"])
    except ValueError:
        raise ParseError("SENTINEL MASTER reply has non-numeric port or quorum", text)
    return SentinelMasterInfo(
        name=raw["name"],
        ip=raw["ip"],
        port=port,
        quorum=quorum,
        flags=tuple(f for f in raw.get("flags", "").split(",") if f),
        num_slaves=_int(raw, "num-slaves"),
        num_other_sentinels=_int(raw, "num-other-sentinels"),
        raw=raw,
    )


def parse_sentinel_replicas(text: str) -> Tuple[List[SentinelReplicaInfo], List[SkippedLine]]:
    """
    Parse a ``SENTINEL SLAVES <name>`` reply.

    The flattened reply is split into one record per ``name`` key. An empty
    reply means the master has no replicas. Records without a usable address
    are returned as skipped entries.

    Raises:
        ParseError: the reply is not a key/value list at all
    """
    pairs = _pairs(_reply_lines(text), text)
    records: List[Tuple[int, Dict[str, str]]] = []
    for index, (key, value) in enumerate(pairs):
        if key == "name" or not records:
            records.append((index * 2 + 1, {}))
        records[-1][1][key] = value

    replicas: List[SentinelReplicaInfo] = []
    skipped: List[SkippedLine] = []
    for line_no, raw in records:
        try:
            port = int(raw["port"])
            ip = raw["ip"]
        except (KeyError, ValueError):
            skipped.append(SkippedLine(line_no, raw.get("name", ""), "replica entry without ip/port"))
            continue
        replicas.append(SentinelReplicaInfo(
            name=raw.get("name", f"{ip}:{port}"),
            ip=ip,
            port=port,
            flags=tuple(f for f in raw.get("flags", "").split(",") if f),
            master_link_status=raw.get("master-link-status"),
            repl_offset=_int(raw, "slave-repl-offset"),
            priority=_int(raw, "slave-priority", _int(raw, "replica-priority", 100)),
            raw=raw,
        ))
    return replicas, skipped


def parse_role(text: str) -> str:
    """Return the role word (``master``, ``slave``, ``sentinel``) of a ROLE reply."""
    for line in _lines(text):
        if line.strip():
            return line.strip().lower()
    raise ParseError("empty ROLE reply", text)
