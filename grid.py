"""
Vertex hash grid for neighbor detection in Fabric of Space - Physics Growth.

Cells are matched through the polygon vertices they share. Floating-point
vertices from the tessellation engine are snapped onto an integer lattice
(1 / VERTEX_PRECISION) and hashed into opaque int64 keys:

Hash pipeline:
1. round_vertices: snap (k, 3) floats to int64 lattice coordinates
2. hash_keys: combine the triple with the spatial-hash primes
3. bucket_cells: key → cell indices owning a vertex with that key
4. prefix_sum / scatter_rows: CSR layout (offsets + flat indices)

Hash collisions only merge buckets; exact matching happens afterwards on the
rounded triples themselves, so a collision can add a candidate pair but never
a neighbor.
"""

import numpy as np

from config import VERTEX_PRECISION, HASH_P1, HASH_P2, HASH_P3

# ==============================================================================
# Vertex rounding and hashing
# ==============================================================================

def round_vertices(vertices, precision=VERTEX_PRECISION):
    """
    Snap vertices onto the integer lattice.

    Args:
        vertices: (k, 3) float array
        precision: Lattice points per unit length

    Returns:
        (k, 3) int64 array of rounded coordinates
    """
    v = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    return np.rint(v * precision).astype(np.int64)


def hash_keys(rounded):
    """
    Combine rounded triples into one int64 key per vertex.

    Same XOR-of-primes scheme as the Taichi pair hash; wraps silently on
    overflow, which is fine for a bucket key.
    """
    r = np.asarray(rounded, dtype=np.int64).reshape(-1, 3)
    with np.errstate(over="ignore"):
        return (r[:, 0] * HASH_P1) ^ (r[:, 1] * HASH_P2) ^ (r[:, 2] * HASH_P3)


def vertex_sets(rounded_cells):
    """Per-cell set of distinct rounded vertex triples."""
    return [set(map(tuple, r.tolist())) for r in rounded_cells]


# ==============================================================================
# Buckets: vertex key → cells
# ==============================================================================

def bucket_cells(rounded_cells):
    """
    Map each vertex key to the sorted cell indices that contain it.

    Args:
        rounded_cells: List of (k, 3) int64 arrays, one per cell

    Returns:
        dict {key: np.ndarray of distinct cell indices}
    """
    key_chunks = []
    owner_chunks = []
    for idx, r in enumerate(rounded_cells):
        if len(r) == 0:
            continue
        key_chunks.append(hash_keys(r))
        owner_chunks.append(np.full(len(r), idx, dtype=np.int64))

    if not key_chunks:
        return {}

    keys = np.concatenate(key_chunks)
    owners = np.concatenate(owner_chunks)

    # Sort by (key, owner) so each key's owners form a contiguous run
    order = np.lexsort((owners, keys))
    keys = keys[order]
    owners = owners[order]

    buckets = {}
    run_starts = np.flatnonzero(np.r_[True, keys[1:] != keys[:-1]])
    run_ends = np.r_[run_starts[1:], len(keys)]
    for start, end in zip(run_starts, run_ends):
        buckets[int(keys[start])] = np.unique(owners[start:end])
    return buckets


def candidate_pairs(buckets):
    """
    All (i, j), i < j, of cells co-occurring under at least one key.

    Returns:
        set of int pairs
    """
    pairs = set()
    for members in buckets.values():
        m = len(members)
        if m < 2:
            continue
        members = members.tolist()
        for a in range(m):
            for b in range(a + 1, m):
                pairs.add((members[a], members[b]))
    return pairs


# ==============================================================================
# CSR helpers (count → prefix sum → scatter)
# ==============================================================================

def prefix_sum(counts):
    """
    Exclusive prefix sum with a trailing total.

    offsets[i] = sum(counts[0..i-1]); offsets[-1] = sum(counts).
    """
    counts = np.asarray(counts, dtype=np.int64)
    offsets = np.zeros(len(counts) + 1, dtype=np.int64)
    np.cumsum(counts, out=offsets[1:])
    return offsets


def scatter_rows(rows, n_rows, cols):
    """
    Scatter (row, col) entries into CSR order.

    Entries of each row end up contiguous and sorted by column.

    Args:
        rows, cols: Parallel int arrays of entries
        n_rows: Number of rows (cells)

    Returns:
        (offsets, indices)
    """
    rows = np.asarray(rows, dtype=np.int64)
    cols = np.asarray(cols, dtype=np.int64)
    counts = np.bincount(rows, minlength=n_rows) if len(rows) else np.zeros(n_rows, dtype=np.int64)
    offsets = prefix_sum(counts)
    order = np.lexsort((cols, rows))
    return offsets, cols[order]
