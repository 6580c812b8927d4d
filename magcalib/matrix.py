"""Small dense-matrix routines used by the magnetic calibration solvers.

Matrices are plain lists of row lists of floats.  Every function returns new
objects and leaves its arguments untouched.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

Matrix = list[list[float]]

# Maximum number of Jacobi sweeps; in practice about 6 are needed.
_EIGEN_ITERATIONS = 15

# Column vector modulus below which a rotation matrix column is treated as corrupt.
_CORRUPT_MATRIX = 0.001


def identity(n: int) -> Matrix:
    """Return the n x n identity matrix."""
    if n < 0:
        raise ValueError("matrix size must not be negative")
    return [[1.0 if i == j else 0.0 for j in range(n)] for i in range(n)]


def _copy(a: Sequence[Sequence[float]]) -> Matrix:
    return [[float(v) for v in row] for row in a]


def determinant3(a: Sequence[Sequence[float]]) -> float:
    """Return the determinant of a 3x3 matrix."""
    return (
        a[0][0] * (a[1][1] * a[2][2] - a[1][2] * a[2][1])
        + a[0][1] * (a[1][2] * a[2][0] - a[1][0] * a[2][2])
        + a[0][2] * (a[1][0] * a[2][1] - a[1][1] * a[2][0])
    )


def inverse_symmetric3(b: Sequence[Sequence[float]]) -> Matrix:
    """Return the inverse of a symmetric 3x3 matrix.

    Only the on- and above-diagonal elements of ``b`` are read.  A singular
    matrix yields the identity matrix.
    """
    c00 = b[1][1] * b[2][2] - b[1][2] * b[1][2]
    c01 = b[1][2] * b[0][2] - b[0][1] * b[2][2]
    c02 = b[0][1] * b[1][2] - b[1][1] * b[0][2]
    det = b[0][0] * c00 + b[0][1] * c01 + b[0][2] * c02
    if det == 0.0:
        return identity(3)
    r = 1.0 / det
    a11 = (b[0][0] * b[2][2] - b[0][2] * b[0][2]) * r
    a12 = (b[0][2] * b[0][1] - b[0][0] * b[1][2]) * r
    a22 = (b[0][0] * b[1][1] - b[0][1] * b[0][1]) * r
    a01 = c01 * r
    a02 = c02 * r
    return [
        [c00 * r, a01, a02],
        [a01, a11, a12],
        [a02, a12, a22],
    ]


def eigencompute(
    a: Sequence[Sequence[float]], n: int | None = None
) -> tuple[list[float], Matrix]:
    """Eigen-decompose the real symmetric matrix in the top-left n x n of ``a``.

    Uses cyclic Jacobi rotations.  Returns ``(eigenvalues, eigenvectors)``
    where column ``j`` of the eigenvector matrix is the normalised vector
    belonging to ``eigenvalues[j]``.  The pairs are not sorted.
    """
    if n is None:
        n = len(a)
    if n < 0 or n > len(a) or any(len(a[i]) < n for i in range(n)):
        raise ValueError("n exceeds the size of the matrix")

    m = [[float(a[i][j]) for j in range(n)] for i in range(n)]
    vec = identity(n)
    val = [m[i][i] for i in range(n)]

    ctr = 0
    while True:
        residue = sum(abs(m[ir][ic]) for ir in range(n - 1) for ic in range(ir + 1, n))
        if residue > 0.0:
            for ir in range(n - 1):
                for ic in range(ir + 1, n):
                    if abs(m[ir][ic]) <= 0.0:
                        continue
                    cot2phi = 0.5 * (val[ic] - val[ir]) / m[ir][ic]
                    tanphi = 1.0 / (abs(cot2phi) + math.sqrt(1.0 + cot2phi * cot2phi))
                    if cot2phi < 0.0:
                        tanphi = -tanphi
                    cosphi = 1.0 / math.sqrt(1.0 + tanphi * tanphi)
                    sinphi = tanphi * cosphi
                    tanhalfphi = sinphi / (1.0 + cosphi)

                    shift = tanphi * m[ir][ic]
                    val[ir] -= shift
                    val[ic] += shift
                    m[ir][ic] = 0.0

                    for row in vec:
                        t = row[ir]
                        row[ir] = t - sinphi * (row[ic] + tanhalfphi * t)
                        row[ic] = row[ic] + sinphi * (t - tanhalfphi * row[ic])

                    for j in range(ir):
                        t = m[j][ir]
                        m[j][ir] = t - sinphi * (m[j][ic] + tanhalfphi * t)
                        m[j][ic] = m[j][ic] + sinphi * (t - tanhalfphi * m[j][ic])
                    for j in range(ir + 1, ic):
                        t = m[ir][j]
                        m[ir][j] = t - sinphi * (m[j][ic] + tanhalfphi * t)
                        m[j][ic] = m[j][ic] + sinphi * (t - tanhalfphi * m[j][ic])
                    for j in range(ic + 1, n):
                        t = m[ir][j]
                        m[ir][j] = t - sinphi * (m[ic][j] + tanhalfphi * t)
                        m[ic][j] = m[ic][j] + sinphi * (t - tanhalfphi * m[ic][j])
        if not (residue > 0.0 and ctr < _EIGEN_ITERATIONS):
            break
        ctr += 1
    return val, vec


def invert(a: Sequence[Sequence[float]]) -> Matrix:
    """Return the inverse of a square matrix by Gauss-Jordan elimination.

    Full pivoting is used.  A singular matrix yields the identity matrix.
    """
    size = len(a)
    if any(len(row) != size for row in a):
        raise ValueError("matrix must be square")
    m = _copy(a)
    pivot_used = [0] * size
    swaps: list[tuple[int, int]] = []

    for _ in range(size):
        largest = 0.0
        prow = pcol = 0
        for j in range(size):
            if pivot_used[j] == 1:
                continue
            for k in range(size):
                if pivot_used[k] == 0:
                    if abs(m[j][k]) >= largest:
                        prow, pcol = j, k
                        largest = abs(m[j][k])
                elif pivot_used[k] > 1:
                    return identity(size)
        pivot_used[pcol] += 1

        if prow != pcol:
            m[prow], m[pcol] = m[pcol], m[prow]
        swaps.append((prow, pcol))

        if m[pcol][pcol] == 0.0:
            return identity(size)

        recip = 1.0 / m[pcol][pcol]
        m[pcol][pcol] = 1.0
        m[pcol] = [v * recip for v in m[pcol]]
        pivot_row = m[pcol]
        for r, row in enumerate(m):
            if r == pcol:
                continue
            scaling = row[pcol]
            row[pcol] = 0.0
            m[r] = [v - p * scaling for v, p in zip(row, pivot_row)]

    for i, j in reversed(swaps):
        if i != j:
            for row in m:
                row[i], row[j] = row[j], row[i]
    return m


def renormalize_rotation(a: Sequence[Sequence[float]]) -> Matrix:
    """Return a re-orthonormalised copy of a 3x3 rotation matrix.

    The x column is normalised, the y column is made orthogonal to it and
    normalised, and the z column is set to their cross product.  Degenerate
    columns are replaced by the matching unit axis.
    """
    m = _copy(a)

    norm = math.sqrt(m[0][0] ** 2 + m[1][0] ** 2 + m[2][0] ** 2)
    if norm > _CORRUPT_MATRIX:
        for r in range(3):
            m[r][0] /= norm
    else:
        m[0][0], m[1][0], m[2][0] = 1.0, 0.0, 0.0

    dot = m[0][0] * m[0][1] + m[1][0] * m[1][1] + m[2][0] * m[2][1]
    for r in range(3):
        m[r][1] -= dot * m[r][0]

    norm = math.sqrt(m[0][1] ** 2 + m[1][1] ** 2 + m[2][1] ** 2)
    if norm > _CORRUPT_MATRIX:
        for r in range(3):
            m[r][1] /= norm
    else:
        m[0][1], m[1][1], m[2][1] = 0.0, 1.0, 0.0

    m[0][2] = m[1][0] * m[2][1] - m[2][0] * m[1][1]
    m[1][2] = m[2][0] * m[0][1] - m[0][0] * m[2][1]
    m[2][2] = m[0][0] * m[1][1] - m[1][0] * m[0][1]
    return m