"""Tests for the linear operator variants."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy.sparse import csr_array

from pyamg.gallery import poisson

from ietidp.ieti.sdp.skeleton import matrix_blocks
from ietidp.operators import (
    FactorizedInverse,
    MatrixOperator,
    ProductOperator,
    ScaledOperator,
    SchurComplementOperator,
    SumOperator,
    as_operator,
)


def _mats():
    rng = np.random.default_rng(11)
    return rng.standard_normal((4, 4)), csr_array(rng.standard_normal((4, 4)))


def test_matrix_operator():
    D, S = _mats()
    x = np.arange(4.0)
    assert_allclose(MatrixOperator(D).apply(x), D @ x)
    assert_allclose(MatrixOperator(S).matvec(x), S @ x)
    assert_allclose(MatrixOperator(S).rmatvec(x), S.T @ x)
    with pytest.raises(TypeError):
        MatrixOperator([[1.0]])


def test_as_operator():
    D, _ = _mats()
    op = MatrixOperator(D)
    assert as_operator(op) is op
    assert isinstance(as_operator(D), MatrixOperator)
    with pytest.raises(TypeError):
        as_operator("not an operator")


def test_scaled_operator():
    D, _ = _mats()
    x = np.ones(4)
    assert_allclose(ScaledOperator(D, -2.0).matvec(x), -2.0 * D @ x)
    assert_allclose(ScaledOperator(D, 1j).rmatvec(x), -1j * D.T @ x)


@pytest.mark.parametrize("n_jobs", [None, 1, 2, -1])
def test_sum_operator(n_jobs):
    D, S = _mats()
    x = np.linspace(-1.0, 1.0, 4)
    op = SumOperator([D, S, MatrixOperator(np.eye(4))], n_jobs=n_jobs)
    assert_allclose(op.matvec(x), D @ x + S @ x + x)
    assert_allclose(op.rmatvec(x), D.T @ x + S.T @ x + x)


def test_sum_operator_checks():
    with pytest.raises(ValueError):
        SumOperator([])
    with pytest.raises(ValueError):
        SumOperator([np.eye(2), np.eye(3)])


def test_product_operator_order():
    D, S = _mats()
    R = np.ones((4, 2))
    x = np.array([1.0, -1.0])
    op = ProductOperator([D, S, R])
    assert op.shape == (4, 2)
    assert_allclose(op.matvec(x), D @ (S @ (R @ x)))
    y = np.arange(4.0)
    assert_allclose(op.rmatvec(y), R.T @ (S.T @ (D.T @ y)))


def test_rows_and_cols():
    R = np.ones((4, 2))
    op = ProductOperator([np.eye(3, 4), R])
    assert (op.rows(), op.cols()) == (3, 2)
    assert (MatrixOperator(R).rows(), MatrixOperator(R).cols()) == (4, 2)
    inv = FactorizedInverse(csr_array(poisson((5,), format="csr")))
    assert inv.rows() == inv.cols() == 5


def test_product_operator_checks():
    with pytest.raises(ValueError):
        ProductOperator([])
    with pytest.raises(ValueError):
        ProductOperator([np.eye(2), np.eye(3)])


def test_factorized_inverse():
    A = csr_array(poisson((6,), format="csr"))
    inv = FactorizedInverse(A)
    b = np.arange(6.0)
    assert_allclose(A @ inv.matvec(b), b, atol=1e-12)
    assert_allclose(A.T @ inv.rmatvec(b), b, atol=1e-12)

    bc = b + 1j * np.ones(6)
    assert_allclose(A @ inv.matvec(bc), bc, atol=1e-12)


def test_factorized_inverse_integer_matrix():
    A = csr_array(np.array([[2, -1], [-1, 2]]))
    inv = FactorizedInverse(A)
    assert_allclose(inv.matvec(np.array([1.0, 1.0])), [1.0, 1.0])


def test_factorized_inverse_rejects_rectangular():
    with pytest.raises(ValueError):
        FactorizedInverse(csr_array(np.ones((2, 3))))


def test_schur_operator_requires_solver():
    A = csr_array(poisson((4,), format="csr"))
    blocks = matrix_blocks(A, [0, 3])
    with pytest.raises(ValueError):
        SchurComplementOperator(blocks)
    with pytest.raises(ValueError):
        SchurComplementOperator(blocks, FactorizedInverse(csr_array(np.eye(3))))
    # empty interior needs no solver
    full = matrix_blocks(A, [0, 1, 2, 3])
    assert_allclose(SchurComplementOperator(full).matmat(np.eye(4)), A.toarray())
