"""
Clustering of face embeddings into people.

The default method builds a minimum spanning tree over the complete
distance graph of all embeddings (Prim's algorithm, suited to a dense
graph), cuts every edge longer than a distance threshold and reports each
remaining connected component as a cluster.  Components smaller than
``min_cluster_size`` are reported as noise instead, which is what separates
this from plain single-linkage clustering.

Distances are computed one row at a time while the tree grows, so memory
stays linear in the number of faces.  Cluster membership depends only on
the embeddings and thresholds: cutting any minimum spanning tree at a
threshold yields the connected components of the threshold graph, so ties
between equal edges cannot change the partition.

HDBSCAN is available as an alternative method when the ``hdbscan`` package
is installed.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

METRICS = ("cosine", "euclidean")


@dataclass
class ClusterTreeNode:
    """Merge event of the spanning tree, for debug visualisation.

    Leaves carry ``index`` (the face), inner nodes the ``distance`` at which
    their two children joined.
    """
    size: int
    distance: float = 0.0
    index: Optional[int] = None
    left: Optional["ClusterTreeNode"] = None
    right: Optional["ClusterTreeNode"] = None

    @property
    def is_leaf(self) -> bool:
        return self.index is not None

    def leaves(self) -> List[int]:
        out: List[int] = []
        stack = [self]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                out.append(int(node.index))
            else:
                stack.extend(c for c in (node.right, node.left) if c is not None)
        return out

    def to_dict(self) -> Dict[str, Any]:
        if self.is_leaf:
            return {"index": self.index, "size": 1}
        return {
            "distance": self.distance,
            "size": self.size,
            "children": [self.left.to_dict(), self.right.to_dict()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterTreeNode":
        if "children" not in data:
            return cls(size=1, index=int(data["index"]))
        left, right = (cls.from_dict(child) for child in data["children"])
        return cls(size=int(data["size"]), distance=float(data["distance"]), left=left, right=right)


@dataclass
class ClusterResult:
    """Clusters (lists of members), noise members and an optional merge tree.

    Members are embedding indices as returned by :func:`cluster_faces`; the
    pipeline maps them to face references with :meth:`map_members`.
    """
    clusters: List[List[Any]] = field(default_factory=list)
    noise: List[Any] = field(default_factory=list)
    debug_tree: Optional[ClusterTreeNode] = None

    def map_members(self, members: Sequence[Any]) -> "ClusterResult":
        return replace(
            self,
            clusters=[[members[i] for i in cluster] for cluster in self.clusters],
            noise=[members[i] for i in self.noise],
        )

    def partition(self) -> Tuple[frozenset, frozenset]:
        """Order-free view: (set of cluster member sets, noise set)."""
        return (frozenset(frozenset(c) for c in self.clusters), frozenset(self.noise))


def _prepare(embeddings: np.ndarray, metric: str) -> np.ndarray:
    data = np.asarray(embeddings, dtype=np.float64)
    if data.ndim != 2:
        raise ValueError(f"Embeddings must be a 2-D array, got shape {data.shape}")
    if metric == "cosine":
        norms = np.linalg.norm(data, axis=1, keepdims=True)
        data = data / np.maximum(norms, 1e-12)
    return data


def _distances_from(data: np.ndarray, row: np.ndarray, metric: str) -> np.ndarray:
    if metric == "cosine":
        return np.clip(1.0 - data @ row, 0.0, 2.0)
    diff = data - row
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))


def pairwise_distances(a: np.ndarray, b: Optional[np.ndarray] = None, metric: str = "cosine",
                       block_size: int = 1024) -> np.ndarray:
    """Full distance matrix between rows of ``a`` and ``b``, in row blocks.

    Parameters
    ----------
    a, b: ndarray, shape (n, dim) and (m, dim)
        Embeddings; ``b`` defaults to ``a``.
    metric: str
        ``"cosine"`` (1 - cosine similarity) or ``"euclidean"``.
    block_size: int
        Rows of ``a`` processed per block, bounding temporary memory to
        ``block_size * m`` entries.
    """
    if metric not in METRICS:
        raise ValueError(f"Unknown metric {metric!r}")
    left = _prepare(a, metric)
    right = left if b is None else _prepare(b, metric)
    out = np.empty((left.shape[0], right.shape[0]), dtype=np.float64)
    for start in range(0, left.shape[0], block_size):
        chunk = left[start:start + block_size]
        if metric == "cosine":
            out[start:start + len(chunk)] = np.clip(1.0 - chunk @ right.T, 0.0, 2.0)
        else:
            sq = (np.sum(chunk ** 2, axis=1)[:, None] + np.sum(right ** 2, axis=1)[None, :]
                  - 2.0 * chunk @ right.T)
            out[start:start + len(chunk)] = np.sqrt(np.maximum(sq, 0.0))
    return out


def minimum_spanning_tree(embeddings: np.ndarray, metric: str = "cosine") -> List[Tuple[int, int, float]]:
    """Prim's algorithm over the complete distance graph.

    Returns
    -------
    list of (int, int, float)
        ``n - 1`` edges ``(parent, child, distance)`` in the order the
        children joined the tree.  The tree is grown from node 0 and the
        nearest outside node is picked with ties going to the lowest index.
    """
    if metric not in METRICS:
        raise ValueError(f"Unknown metric {metric!r}")
    data = _prepare(embeddings, metric)
    n = data.shape[0]
    if n < 2:
        return []
    in_tree = np.zeros(n, dtype=bool)
    best = np.full(n, np.inf)
    parent = np.full(n, -1, dtype=np.int64)
    edges: List[Tuple[int, int, float]] = []

    current = 0
    in_tree[current] = True
    for _ in range(n - 1):
        dist = _distances_from(data, data[current], metric)
        closer = (~in_tree) & (dist < best)
        best[closer] = dist[closer]
        parent[closer] = current
        candidates = np.where(in_tree, np.inf, best)
        current = int(np.argmin(candidates))
        in_tree[current] = True
        edges.append((int(parent[current]), current, float(best[current])))
    return edges


def connected_components(n_nodes: int, edges: Iterable[Tuple[int, int]]) -> Dict[int, List[int]]:
    """Compute connected components using a union–find structure.

    Returns a mapping from component representative to a list of member
    indices, in ascending order of each component's smallest member.
    """
    parent = list(range(n_nodes))

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(a: int, b: int) -> None:
        ra, rb = find(a), find(b)
        if ra != rb:
            # Keep the smaller index as root so output order is stable.
            if rb < ra:
                ra, rb = rb, ra
            parent[rb] = ra

    for a, b in edges:
        union(a, b)
    comp: Dict[int, List[int]] = defaultdict(list)
    for i in range(n_nodes):
        comp[find(i)].append(i)
    return comp


def build_merge_tree(n_nodes: int, edges: Sequence[Tuple[int, int, float]]) -> Optional[ClusterTreeNode]:
    """Single-linkage merge tree from spanning tree edges.

    Edges are merged in ascending distance order (ties by endpoints).  For a
    disconnected edge set the last two remaining roots are not joined, so
    callers pass a full spanning tree.
    """
    if n_nodes == 0:
        return None
    nodes: Dict[int, ClusterTreeNode] = {i: ClusterTreeNode(size=1, index=i) for i in range(n_nodes)}
    parent = list(range(n_nodes))

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for a, b, dist in sorted(edges, key=lambda e: (e[2], min(e[0], e[1]), max(e[0], e[1]))):
        ra, rb = find(a), find(b)
        if ra == rb:
            continue
        if rb < ra:
            ra, rb = rb, ra
        left, right = nodes.pop(ra), nodes.pop(rb)
        parent[rb] = ra
        nodes[ra] = ClusterTreeNode(size=left.size + right.size, distance=float(dist),
                                    left=left, right=right)
    return nodes[find(0)]


def _split_by_size(components: Iterable[List[int]], min_cluster_size: int) -> ClusterResult:
    clusters: List[List[int]] = []
    noise: List[int] = []
    for members in components:
        if len(members) >= min_cluster_size:
            clusters.append(sorted(members))
        else:
            noise.extend(members)
    clusters.sort(key=lambda c: c[0])
    return ClusterResult(clusters=clusters, noise=sorted(noise))


def _validate(distance_threshold: float, min_cluster_size: int, metric: str) -> None:
    if metric not in METRICS:
        raise ValueError(f"Unknown metric {metric!r}; expected one of {METRICS}")
    if distance_threshold < 0:
        raise ValueError("distance_threshold must be non-negative")
    if min_cluster_size < 1:
        raise ValueError("min_cluster_size must be at least 1")


def cluster_faces(embeddings: np.ndarray, distance_threshold: float, min_cluster_size: int,
                  metric: str = "cosine", keep_debug_tree: bool = False,
                  method: str = "mst", hdbscan_min_samples: int = 5) -> ClusterResult:
    """Cluster embeddings into identities.

    Parameters
    ----------
    embeddings: ndarray, shape (n_samples, dim)
        Face embedding vectors.
    distance_threshold: float
        Spanning tree edges strictly longer than this are cut.
    min_cluster_size: int
        Components with fewer members become noise.
    metric: str
        ``"cosine"`` (1 - cosine similarity) or ``"euclidean"``.
    keep_debug_tree: bool
        Attach the spanning tree merge history to the result.
    method: str
        ``"mst"`` (default) or ``"hdbscan"``.
    hdbscan_min_samples: int
        Parameter for HDBSCAN; ignored for the spanning tree method.

    Returns
    -------
    ClusterResult
        Clusters ordered by their smallest member, members ascending, noise
        ascending.  Zero embeddings give an empty result.
    """
    _validate(distance_threshold, min_cluster_size, metric)
    embeddings = np.asarray(embeddings)
    n = embeddings.shape[0] if embeddings.ndim >= 1 else 0
    if n == 0:
        return ClusterResult()
    if method == "hdbscan":
        return _cluster_hdbscan(embeddings, distance_threshold, min_cluster_size,
                                metric, hdbscan_min_samples)
    if method != "mst":
        raise ValueError(f"Unknown clustering method {method!r}")

    edges = minimum_spanning_tree(embeddings, metric)
    kept = [(a, b) for a, b, dist in edges if dist <= distance_threshold]
    components = connected_components(n, kept)
    result = _split_by_size(components.values(), min_cluster_size)
    if keep_debug_tree:
        result.debug_tree = build_merge_tree(n, edges)
    logger.info("Clustered %d faces: clusters=%d noise=%d threshold=%.3f",
                n, len(result.clusters), len(result.noise), distance_threshold)
    return result


def _cluster_hdbscan(embeddings: np.ndarray, distance_threshold: float, min_cluster_size: int,
                     metric: str, min_samples: int) -> ClusterResult:
    try:
        import hdbscan
    except ImportError:
        raise RuntimeError("HDBSCAN is not installed; install hdbscan or use the mst method")
    data = _prepare(embeddings, metric)
    epsilon = float(distance_threshold)
    if metric == "cosine":
        # Unit vectors: euclidean distance is sqrt(2 * cosine distance).
        epsilon = math.sqrt(2.0 * epsilon)
    clusterer = hdbscan.HDBSCAN(
        min_cluster_size=max(2, min_cluster_size),
        min_samples=min_samples,
        cluster_selection_epsilon=epsilon,
        metric="euclidean",
    )
    labels = clusterer.fit_predict(data)
    groups: Dict[int, List[int]] = defaultdict(list)
    noise: List[int] = []
    for idx, lab in enumerate(labels):
        if lab >= 0:
            groups[int(lab)].append(idx)
        else:
            noise.append(idx)
    result = _split_by_size(groups.values(), min_cluster_size)
    result.noise = sorted(result.noise + noise)
    return result


def assign_labels(clusters: List[List[Any]]) -> List[str]:
    """Assign canonical string labels (Person_0000, Person_0001, …).

    Returns a list of the same length as ``clusters`` with labels sorted by
    descending cluster size; equal sizes keep their cluster order.
    """
    order = sorted(range(len(clusters)), key=lambda i: (-len(clusters[i]), i))
    labels = [""] * len(clusters)
    for idx, cluster_idx in enumerate(order):
        labels[cluster_idx] = f"Person_{idx:04d}"
    return labels
