"""
clustering.py — Spatial grouping of concurrent active SOS signals.

═══════════════════════════════════════════════════════════════════════════
ALGORITHM
═══════════════════════════════════════════════════════════════════════════

    1. Keep only non-terminal signals (pending / acknowledged / responding)
    2. For every pair (i, j):  haversine(i, j) ≤ radius_km  →  union(i, j)
    3. Each union-find root is one cluster (connected component)

Connected components make membership transitive: A~B and B~C puts A, B
and C in one cluster even when distance(A, C) > radius. A greedy
"seed + neighbours" pass would not guarantee that.

Pairwise cost is O(n²); each pair is first checked against the seed's
bounding box (radius_utils.is_inside_radius) before running the trig.

Per cluster:
    centroid           arithmetic mean of member lat / lng
    dominant_priority  max Priority among members
    status_counts      members per status

Output order: dominant priority desc, then member count desc.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from backend.app.core.errors import ValidationError
from backend.app.sos.models import Priority, SosSignal
from backend.app.spatial.radius_utils import is_inside_radius

logger = logging.getLogger(__name__)


@dataclass
class Cluster:
    """One connected component of nearby active signals."""
    cluster_id: str
    member_ids: List[str]
    centroid_lat: float
    centroid_lng: float
    dominant_priority: Priority
    status_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def member_count(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "member_ids": list(self.member_ids),
            "member_count": self.member_count,
            "centroid": {"lat": self.centroid_lat, "lng": self.centroid_lng},
            "dominant_priority": self.dominant_priority.label,
            "status_counts": dict(self.status_counts),
        }


class _UnionFind:
    def __init__(self, n: int):
        self.parent = list(range(n))
        self.rank = [0] * n

    def find(self, i: int) -> int:
        root = i
        while self.parent[root] != root:
            root = self.parent[root]
        # path compression
        while self.parent[i] != root:
            self.parent[i], i = root, self.parent[i]
        return root

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1


def _cluster_id(member_ids: List[str]) -> str:
    digest = hashlib.sha1("|".join(sorted(member_ids)).encode("utf-8")).hexdigest()
    return f"CLU-{digest[:10].upper()}"


def cluster(signals: Iterable[SosSignal], radius_km: float) -> List[Cluster]:
    """
    Group active signals into connected components of radius_km links.

    Parameters
    ----------
    signals : iterable of SosSignal
        Snapshot to cluster; terminal signals are ignored.
    radius_km : float
        Link distance, inclusive. Must be positive.

    Returns
    -------
    list of Cluster
        Sorted by dominant priority desc, then member count desc.
    """
    if radius_km is None or radius_km <= 0:
        raise ValidationError(
            f"radius must be a positive number of kilometres, got {radius_km}",
            field="radius",
        )

    active = [s for s in signals if not s.is_terminal]
    n = len(active)
    coords = [s.location.to_coordinate() for s in active]
    uf = _UnionFind(n)

    for i in range(n):
        for j in range(i + 1, n):
            if is_inside_radius(coords[i], coords[j], radius_km):
                uf.union(i, j)

    groups: Dict[int, List[int]] = {}
    for i in range(n):
        groups.setdefault(uf.find(i), []).append(i)

    clusters: List[Cluster] = []
    for indices in groups.values():
        members = [active[i] for i in indices]
        member_ids = [s.id for s in members]
        clusters.append(Cluster(
            cluster_id=_cluster_id(member_ids),
            member_ids=member_ids,
            centroid_lat=sum(s.location.lat for s in members) / len(members),
            centroid_lng=sum(s.location.lng for s in members) / len(members),
            dominant_priority=max(s.priority for s in members),
            status_counts=dict(Counter(s.status.value for s in members)),
        ))

    clusters.sort(key=lambda c: (int(c.dominant_priority), c.member_count), reverse=True)

    logger.debug(
        "Clustered %d active signals into %d clusters (radius=%.2f km)",
        n, len(clusters), radius_km,
    )
    return clusters


def summarize(clusters: List[Cluster], eligible_count: int) -> Dict[str, Any]:
    """Aggregate figures shown alongside the cluster list."""
    clustered = sum(c.member_count for c in clusters)
    return {
        "total_clusters": len(clusters),
        "total_signals": eligible_count,
        "clustered_signals": clustered,
        "multi_signal_clusters": sum(1 for c in clusters if c.member_count > 1),
        "average_cluster_size": round(clustered / len(clusters), 1) if clusters else 0.0,
        "critical_clusters": sum(
            1 for c in clusters if c.dominant_priority == Priority.CRITICAL
        ),
        "high_priority_clusters": sum(
            1 for c in clusters if c.dominant_priority == Priority.HIGH
        ),
    }
