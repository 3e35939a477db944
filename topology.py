"""
Topological neighbor detection from shared polygon vertices.

Two cells are neighbors iff their polygons share at least MIN_SHARED_VERTICES
(default 2) vertices after rounding to 1 / VERTEX_PRECISION. A single shared
vertex is a point contact, not an edge or face, and is ignored.

Build cost:
- O(V) to round, hash and bucket every vertex (grid.py)
- O(sum of bucket_size²) candidate pairs, each settled by an exact set
  intersection of rounded triples

The result is a symmetric CSR graph: neighbors of cell i are the contiguous
run indices[offsets[i]:offsets[i + 1]], so lookups never allocate. The graph
describes one set of positions and goes stale as soon as a point moves.
"""

import numpy as np

from cells import normalize_cells
from config import VERTEX_PRECISION, MIN_SHARED_VERTICES
from grid import round_vertices, bucket_cells, candidate_pairs, vertex_sets, scatter_rows


class NeighborGraph:
    """Symmetric adjacency between cells in CSR form."""

    def __init__(self, offsets, indices):
        self.offsets = np.asarray(offsets, dtype=np.int64)
        self.indices = np.asarray(indices, dtype=np.int64)

    def __len__(self):
        return len(self.offsets) - 1

    @property
    def n_cells(self):
        return len(self)

    @property
    def degree(self):
        """Neighbor count per cell."""
        return np.diff(self.offsets)

    @property
    def total_neighbors(self):
        return int(self.offsets[-1])

    @property
    def average_degree(self):
        n = len(self)
        return self.total_neighbors / n if n else 0.0

    def neighbors(self, i):
        """Neighbor indices of cell i (a view, do not modify)."""
        return self.indices[self.offsets[i]:self.offsets[i + 1]]

    def has_edge(self, i, j):
        run = self.neighbors(i)
        k = np.searchsorted(run, j)
        return bool(k < len(run) and run[k] == j)

    def pairs(self):
        """Each undirected edge once, as (i, j) with i < j."""
        out = []
        for i in range(len(self)):
            for j in self.neighbors(i).tolist():
                if i < j:
                    out.append((i, j))
        return out

    def check_symmetry(self):
        """
        Count one-sided adjacency entries.

        Returns:
            Number of (i, j) entries without the matching (j, i); 0 when valid
        """
        asym = 0
        for i in range(len(self)):
            for j in self.neighbors(i).tolist():
                if not self.has_edge(j, i):
                    asym += 1
        return asym

    def summary(self):
        deg = self.degree
        return {
            "cells": len(self),
            "edges": self.total_neighbors // 2,
            "mean_degree": float(deg.mean()) if len(deg) else 0.0,
            "max_degree": int(deg.max()) if len(deg) else 0,
            "isolated": int(np.count_nonzero(deg == 0)),
        }

    @classmethod
    def empty(cls, n_cells):
        return cls(np.zeros(n_cells + 1, dtype=np.int64), np.zeros(0, dtype=np.int64))


def count_shared_vertices(set_a, set_b):
    """Exact count of rounded vertices present in both cells."""
    if len(set_a) > len(set_b):
        set_a, set_b = set_b, set_a
    return sum(1 for v in set_a if v in set_b)


def build_neighbor_graph(cells, precision=VERTEX_PRECISION, min_shared=MIN_SHARED_VERTICES):
    """
    Build the symmetric neighbor graph of a tessellation.

    Args:
        cells: Sequence of cells in any shape accepted by cells.cell_vertices()
        precision: Vertex rounding lattice (1 / tolerance)
        min_shared: Shared vertices required for adjacency

    Returns:
        NeighborGraph with len(cells) rows
    """
    polygons = normalize_cells(cells)
    n = len(polygons)
    rounded = [round_vertices(p, precision) for p in polygons]
    exact = vertex_sets(rounded)

    rows = []
    cols = []
    for i, j in candidate_pairs(bucket_cells(rounded)):
        if count_shared_vertices(exact[i], exact[j]) >= min_shared:
            # Both directions so the CSR is symmetric by construction
            rows.append(i)
            cols.append(j)
            rows.append(j)
            cols.append(i)

    offsets, indices = scatter_rows(rows, n, cols)
    return NeighborGraph(offsets, indices)
