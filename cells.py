"""
Cell polygon adapter for Fabric of Space - Physics Growth.

The tessellation engine hands cells over in several shapes:
- a sequence of 3-float vertices
- an object (or mapping) with a `vertices` field
- an object (or mapping) with `faces`, each face carrying its own `vertices`
- a flat numeric buffer [x0, y0, z0, x1, y1, z1, ...]

cell_vertices() turns every one of them into a (k, 3) float64 array so the
neighbor builder only ever sees one representation.
"""

from collections.abc import Mapping

import numpy as np

from config import FACE_KEY_DECIMALS

_EMPTY = np.zeros((0, 3), dtype=np.float64)


def _field(cell, name):
    """Read `name` from a mapping key or an attribute, None if absent."""
    if isinstance(cell, Mapping):
        return cell.get(name)
    return getattr(cell, name, None)


def _as_vertex_array(data):
    arr = np.asarray(data, dtype=np.float64)
    if arr.size == 0:
        return _EMPTY
    if arr.ndim == 1:
        # Flat buffer: group consecutive triples
        if arr.shape[0] % 3 != 0:
            raise ValueError(f"flat vertex buffer length {arr.shape[0]} is not a multiple of 3")
        return arr.reshape(-1, 3)
    if arr.ndim == 2 and arr.shape[1] == 3:
        return arr
    raise ValueError(f"cell vertices must be (k, 3) or flat, got shape {arr.shape}")


def _face_vertices(faces):
    """Collect the distinct vertices of a face-based cell, first-seen order."""
    seen = set()
    out = []
    for face in faces:
        verts = _field(face, "vertices")
        if verts is None:
            continue
        for v in _as_vertex_array(verts):
            key = tuple(np.round(v, FACE_KEY_DECIMALS))
            if key not in seen:
                seen.add(key)
                out.append(v)
    if not out:
        return _EMPTY
    return np.array(out, dtype=np.float64)


def cell_vertices(cell):
    """
    Normalize one cell into a (k, 3) float64 vertex array.

    Args:
        cell: Any supported cell shape (see module docstring), or None

    Returns:
        numpy array of shape (k, 3); (0, 3) for empty or missing cells

    Raises:
        ValueError: flat buffer length not divisible by 3, or wrong column count
    """
    if cell is None:
        return _EMPTY
    if isinstance(cell, np.ndarray):
        return _as_vertex_array(cell)

    faces = _field(cell, "faces")
    if faces is not None:
        return _face_vertices(faces)

    verts = _field(cell, "vertices")
    if verts is not None:
        return _as_vertex_array(verts)

    if isinstance(cell, Mapping):
        return _EMPTY
    return _as_vertex_array(list(cell))


def normalize_cells(cells):
    """Apply cell_vertices() to a whole tessellation."""
    return [cell_vertices(c) for c in cells]


def cells_from_delaunay(tetrahedra, barycenters, n_points):
    """
    Build per-point cells from a Delaunay computation.

    Every tetrahedron contributes its barycenter to the cell of each of its
    four generator points. Tetrahedra without a barycenter are skipped, as
    are vertex indices outside [0, n_points).

    Args:
        tetrahedra: (m, 4) generator indices
        barycenters: (m, 3) positions, one per tetrahedron (None allowed)
        n_points: Number of generator points

    Returns:
        List of n_points (k, 3) arrays
    """
    buckets = [[] for _ in range(n_points)]
    for tet, bary in zip(tetrahedra, barycenters):
        if bary is None:
            continue
        for idx in tet:
            idx = int(idx)
            if 0 <= idx < n_points:
                buckets[idx].append(bary)
    return [np.array(b, dtype=np.float64).reshape(-1, 3) if b else _EMPTY for b in buckets]


def cube_lattice(nx, ny, nz, spacing=1.0):
    """
    Regular lattice of axis-aligned cube cells.

    Point (i, j, k) sits at the center of its cube; each cell lists the 8
    cube corners. Face- and edge-adjacent cubes share 4 and 2 corners
    (neighbors), corner-adjacent cubes share only 1 (not neighbors).

    Returns:
        (points, cells): (n, 3) float64 array and list of (8, 3) arrays
    """
    corners = np.array([[dx, dy, dz] for dx in (0, 1) for dy in (0, 1) for dz in (0, 1)],
                       dtype=np.float64)
    points = []
    cells = []
    for i in range(nx):
        for j in range(ny):
            for k in range(nz):
                origin = np.array([i, j, k], dtype=np.float64)
                points.append((origin + 0.5) * spacing)
                cells.append((origin + corners) * spacing)
    return np.array(points, dtype=np.float64).reshape(-1, 3), cells
