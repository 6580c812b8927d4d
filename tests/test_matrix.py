import math
import random

import pytest

from magcalib.matrix import (
    determinant3,
    eigencompute,
    identity,
    inverse_symmetric3,
    invert,
    renormalize_rotation,
)


def _matmul(a, b):
    return [[sum(a[i][k] * b[k][j] for k in range(len(b))) for j in range(len(b[0]))]
            for i in range(len(a))]


def _assert_close_matrix(a, b, tol=1e-9):
    assert len(a) == len(b)
    for ra, rb in zip(a, b):
        assert ra == pytest.approx(rb, abs=tol)


def _random_symmetric(n, seed):
    rng = random.Random(seed)
    m = [[0.0] * n for _ in range(n)]
    for i in range(n):
        for j in range(i, n):
            v = rng.uniform(-5.0, 5.0)
            m[i][j] = m[j][i] = v
    return m


def test_identity_shape_and_values():
    m = identity(4)
    assert len(m) == 4
    for i in range(4):
        for j in range(4):
            assert m[i][j] == (1.0 if i == j else 0.0)


def test_identity_negative_raises():
    with pytest.raises(ValueError):
        identity(-1)


def test_determinant_of_identity_is_one():
    assert determinant3(identity(3)) == 1.0


def test_determinant_of_diagonal_is_product():
    assert determinant3([[2.0, 0, 0], [0, 3.0, 0], [0, 0, 4.0]]) == pytest.approx(24.0)


def test_determinant_changes_sign_on_row_swap():
    a = [[1.0, 2.0, 3.0], [0.5, -1.0, 4.0], [2.0, 1.0, -3.0]]
    swapped = [a[1], a[0], a[2]]
    assert determinant3(swapped) == pytest.approx(-determinant3(a))


def test_inverse_symmetric3_round_trip():
    b = [[4.0, 1.0, 0.5], [1.0, 3.0, 0.2], [0.5, 0.2, 2.0]]
    inv = inverse_symmetric3(b)
    _assert_close_matrix(_matmul(b, inv), identity(3))
    for i in range(3):
        for j in range(3):
            assert inv[i][j] == pytest.approx(inv[j][i])


def test_inverse_symmetric3_reads_only_upper_triangle():
    upper = [[4.0, 1.0, 0.5], [99.0, 3.0, 0.2], [-7.0, 42.0, 2.0]]
    full = [[4.0, 1.0, 0.5], [1.0, 3.0, 0.2], [0.5, 0.2, 2.0]]
    _assert_close_matrix(inverse_symmetric3(upper), inverse_symmetric3(full))


def test_inverse_symmetric3_singular_gives_identity():
    b = [[1.0, 2.0, 3.0], [2.0, 4.0, 6.0], [3.0, 6.0, 9.0]]
    assert inverse_symmetric3(b) == identity(3)


@pytest.mark.parametrize("n,seed", [(3, 1), (4, 2), (7, 3), (10, 4)])
def test_eigencompute_satisfies_eigen_equation(n, seed):
    a = _random_symmetric(n, seed)
    vals, vecs = eigencompute(a, n)
    assert len(vals) == n
    for j in range(n):
        v = [vecs[i][j] for i in range(n)]
        av = [sum(a[i][k] * v[k] for k in range(n)) for i in range(n)]
        assert av == pytest.approx([vals[j] * x for x in v], abs=1e-6)


@pytest.mark.parametrize("n,seed", [(4, 5), (10, 6)])
def test_eigencompute_vectors_orthonormal_and_trace(n, seed):
    a = _random_symmetric(n, seed)
    vals, vecs = eigencompute(a, n)
    vtv = [[sum(vecs[k][i] * vecs[k][j] for k in range(n)) for j in range(n)]
           for i in range(n)]
    _assert_close_matrix(vtv, identity(n), tol=1e-9)
    assert sum(vals) == pytest.approx(sum(a[i][i] for i in range(n)))


def test_eigencompute_uses_top_left_block_and_keeps_input():
    big = _random_symmetric(10, 7)
    before = [row[:] for row in big]
    vals, vecs = eigencompute(big, 3)
    assert big == before
    assert len(vals) == 3 and len(vecs) == 3
    block = [row[:3] for row in big[:3]]
    assert sum(vals) == pytest.approx(sum(block[i][i] for i in range(3)))


def test_eigencompute_diagonal_input_unchanged():
    vals, vecs = eigencompute([[5.0, 0.0], [0.0, -2.0]])
    assert vals == [5.0, -2.0]
    assert vecs == identity(2)


def test_eigencompute_n_too_large_raises():
    with pytest.raises(ValueError):
        eigencompute(identity(3), 4)


@pytest.mark.parametrize("seed", [11, 12, 13])
def test_invert_round_trip(seed):
    rng = random.Random(seed)
    a = [[rng.uniform(-3, 3) for _ in range(4)] for _ in range(4)]
    inv = invert(a)
    _assert_close_matrix(_matmul(a, inv), identity(4), tol=1e-8)
    _assert_close_matrix(_matmul(inv, a), identity(4), tol=1e-8)


def test_invert_needs_pivoting():
    a = [[0.0, 1.0, 0.0], [0.0, 0.0, 2.0], [3.0, 0.0, 0.0]]
    inv = invert(a)
    _assert_close_matrix(_matmul(a, inv), identity(3))


def test_invert_singular_gives_identity():
    a = [[1.0, 2.0], [2.0, 4.0]]
    assert invert(a) == identity(2)


def test_invert_does_not_modify_input():
    a = [[2.0, 1.0], [1.0, 3.0]]
    invert(a)
    assert a == [[2.0, 1.0], [1.0, 3.0]]


def test_invert_non_square_raises():
    with pytest.raises(ValueError):
        invert([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])


def _rotation_z(theta):
    c, s = math.cos(theta), math.sin(theta)
    return [[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]]


def test_renormalize_keeps_valid_rotation():
    r = _rotation_z(0.7)
    _assert_close_matrix(renormalize_rotation(r), r, tol=1e-12)


def test_renormalize_produces_orthonormal_matrix():
    r = _rotation_z(0.3)
    noisy = [[v * 1.1 + 0.02 * (i - j) for j, v in enumerate(row)] for i, row in enumerate(r)]
    out = renormalize_rotation(noisy)
    rtr = [[sum(out[k][i] * out[k][j] for k in range(3)) for j in range(3)] for i in range(3)]
    _assert_close_matrix(rtr, identity(3), tol=1e-12)
    assert determinant3(out) == pytest.approx(1.0)


def test_renormalize_degenerate_columns_fall_back_to_axes():
    out = renormalize_rotation([[0.0] * 3 for _ in range(3)])
    _assert_close_matrix(out, identity(3))