"""
Numba Shape Function 검증 테스트

NumPy 구현(shape_function.py)과 Numba 구현이 같은 값을 내는지 확인.
"""

import numpy as np
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from featdic.core.optimization import shape_function as sf
from featdic.core.optimization import shape_function_numba as sfn


ORDERS = [(1, sfn.AFFINE), (2, sfn.QUADRATIC)]


def _params(order, seed=0):
    rng = np.random.default_rng(seed)
    if order == 1:
        p = rng.normal(0.0, 0.02, 6)
        p[[0, 3]] = rng.uniform(-3.0, 3.0, 2)
    else:
        p = rng.normal(0.0, 0.02, 12)
        p[[3, 4, 5, 9, 10, 11]] *= 0.05
        p[[0, 6]] = rng.uniform(-3.0, 3.0, 2)
    return p


def test_shape_type_mapping():
    assert sfn.shape_type_of(1) == sfn.AFFINE
    assert sfn.shape_type_of(2) == sfn.QUADRATIC
    with pytest.raises(ValueError):
        sfn.shape_type_of(0)


def test_local_coordinates_row_major():
    """행 우선: ξ가 빠르게 변함, 사각형 서브셋"""
    xsi, eta = sfn.generate_local_coordinates(2, 1)
    assert len(xsi) == 15
    assert np.array_equal(xsi[:5], [-2, -1, 0, 1, 2])
    assert np.all(eta[:5] == -1)
    assert np.all(eta[-5:] == 1)

    xsi_np, eta_np = sf.generate_local_coordinates(2, 1)
    assert np.array_equal(xsi, xsi_np)
    assert np.array_equal(eta, eta_np)


@pytest.mark.parametrize("order, shape_type", ORDERS)
def test_warp_matches_numpy(order, shape_type):
    xsi, eta = sfn.generate_local_coordinates(8, 5)
    p = _params(order)
    xsi_w = np.empty_like(xsi)
    eta_w = np.empty_like(eta)

    sfn.warp(p, xsi, eta, xsi_w, eta_w, shape_type)
    exp_x, exp_y = sf.warp(p, xsi, eta, order)

    assert np.allclose(xsi_w, exp_x, atol=1e-12)
    assert np.allclose(eta_w, exp_y, atol=1e-12)


@pytest.mark.parametrize("order, shape_type", ORDERS)
def test_steepest_descent_and_hessian(order, shape_type):
    xsi, eta = sfn.generate_local_coordinates(6, 6)
    rng = np.random.default_rng(3)
    dfdx = rng.normal(size=len(xsi))
    dfdy = rng.normal(size=len(xsi))
    n_params = sfn.get_num_params(shape_type)

    J = np.empty((len(xsi), n_params))
    H = np.empty((n_params, n_params))
    sfn.compute_steepest_descent(dfdx, dfdy, xsi, eta, J, shape_type)
    sfn.compute_hessian(J, H)

    J_np = sf.compute_steepest_descent(dfdx, dfdy, xsi, eta, order)
    assert np.allclose(J, J_np, atol=1e-12)
    assert np.allclose(H, sf.compute_hessian(J_np), rtol=1e-10)
    assert np.array_equal(H, H.T)


@pytest.mark.parametrize("order, shape_type", ORDERS)
def test_update_matches_numpy(order, shape_type):
    p = _params(order, seed=1)
    dp = _params(order, seed=2) * 0.1
    p_new = np.empty_like(p)

    code = sfn.update_warp(p, dp, p_new, shape_type, sfn.allocate_warp_work())

    assert code == 0
    assert np.allclose(p_new, sf.update_warp_inverse_compositional(p, dp, order),
                       atol=1e-10)


@pytest.mark.parametrize("order, shape_type", ORDERS)
def test_dp_norm_matches_numpy(order, shape_type):
    dp = _params(order, seed=4)
    assert sfn.compute_dp_norm(dp, 9, 4, shape_type) == pytest.approx(
        sf.compute_dp_norm(dp, 9, 4, order), rel=1e-12)


def test_singular_affine_update_keeps_params():
    """W(Δp) 특이 → -1, p 유지"""
    p = np.array([1.0, 0.1, 0.0, 2.0, 0.0, 0.1])
    dp = np.array([0.0, -1.0, 0.0, 0.0, 0.0, 0.0])  # 1 + dux = 0
    p_new = np.empty(6)

    assert sfn.update_warp_affine(p, dp, p_new) == -1
    assert np.array_equal(p_new, p)


def test_singular_quadratic_update_keeps_params():
    p = _params(2, seed=5)
    dp = np.zeros(12)
    dp[1] = -1.0
    dp[2] = 0.0
    p_new = np.empty(12)

    assert sfn.update_warp_quadratic(p, dp, p_new, sfn.allocate_warp_work()) == -1
    assert np.array_equal(p_new, p)


def test_quadratic_update_reuses_work_buffer():
    """같은 작업 버퍼를 연속 사용해도 매번 NumPy 결과와 일치"""
    work = sfn.allocate_warp_work()
    p_new = np.empty(12)
    for seed in range(5):
        p = _params(2, seed=10 + seed)
        dp = _params(2, seed=20 + seed) * 0.2

        assert sfn.update_warp_quadratic(p, dp, p_new, work) == 0
        assert np.allclose(p_new, sf.update_warp_inverse_compositional(p, dp, 2),
                           atol=1e-10)


def test_warmup_runs():
    sfn.warmup_numba_shape()


if __name__ == "__main__":
    test_shape_type_mapping()
    test_local_coordinates_row_major()
    for o, t in ORDERS:
        test_warp_matches_numpy(o, t)
        test_steepest_descent_and_hessian(o, t)
        test_update_matches_numpy(o, t)
        test_dp_norm_matches_numpy(o, t)
    test_singular_affine_update_keeps_params()
    test_singular_quadratic_update_keeps_params()
    test_quadratic_update_reuses_work_buffer()
    test_warmup_runs()
    print("✅ Numba shape function 테스트 통과")
