"""
IC-GN 테스트

해석적 스페클 패턴으로 만든 변형 이미지 쌍에서 두 엔진(numba, thread)의
파라미터 복원 정확도와 종료 상태를 검증한다.
"""

import numpy as np
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from featdic.core.config import SolverConfig
from featdic.core.optimization import (
    compute_icgn,
    apply_icgn_result,
    compute_gradient,
    ICGN_CONVERGED,
    ICGN_MAX_ITER_REACHED,
    ICGN_OUT_OF_BOUNDS,
    ICGN_SINGULAR_HESSIAN,
    ICGN_INVALID_SUBSET,
)
from featdic.core.optimization.icgn_core_numba import allocate_worker_buffers
from featdic.models import POI2D, ZNCC_FAILED, make_poi_grid

sys.path.insert(0, str(Path(__file__).parent))
from synthetic_images import (
    make_reference,
    make_translated,
    make_affine_pair,
    affine_truth,
    make_quadratic_pair,
)

ENGINES = ['numba', 'thread']

A_AFFINE = np.array([[1.01, 0.005], [-0.004, 0.992]])
T_AFFINE = np.array([1.5, -0.7])

P_QUAD = np.array([1.2, 0.004, -0.003, 8e-4, -5e-4, 6e-4,
                   -0.7, 0.002, 0.005, -6e-4, 4e-4, -7e-4])


def _run(ref, tar, pois, engine, **config):
    config.setdefault('subset_radius_x', 15)
    config.setdefault('subset_radius_y', 15)
    config.setdefault('max_iteration', 30)
    config.setdefault('convergence_threshold', 1e-4)
    return compute_icgn(ref, tar, pois, SolverConfig(**config),
                        engine=engine, n_workers=2)


# ===== 정상 수렴 =====

@pytest.mark.parametrize("engine", ENGINES)
@pytest.mark.parametrize("shape_order", [1, 2])
def test_identical_images(engine, shape_order):
    ref = make_reference()
    pois = [POI2D(100.0, 100.0), POI2D(60.0, 140.0)]

    result = _run(ref, ref, pois, engine, shape_order=shape_order)

    assert np.all(result.status == ICGN_CONVERGED)
    assert np.all(result.iterations <= 2)
    assert np.allclose(result.disp_u, 0.0, atol=1e-6)
    assert np.allclose(result.disp_v, 0.0, atol=1e-6)
    assert np.all(result.zncc_values > 0.9999)


@pytest.mark.parametrize("engine", ENGINES)
def test_translation_from_zero_guess(engine):
    ref, tar = make_translated(shift_x=2.0, shift_y=-1.0)
    pois = make_poi_grid(60.0, 60.0, 4, 4, spacing=25.0)

    result = _run(ref, tar, pois, engine)

    assert np.all(result.status == ICGN_CONVERGED)
    assert np.max(np.abs(result.disp_u - 2.0)) < 0.01
    assert np.max(np.abs(result.disp_v + 1.0)) < 0.01
    assert np.max(np.abs(result.disp_ux)) < 1e-3
    assert result.mean_zncc > 0.999


@pytest.mark.parametrize("engine", ENGINES)
def test_affine_first_order(engine):
    ref, tar = make_affine_pair(A_AFFINE, T_AFFINE)
    poi = POI2D(100.0, 100.0)
    poi.deformation.u, poi.deformation.v = 3.0, -2.0

    result = _run(ref, tar, [poi], engine, shape_order=1)

    truth = affine_truth(A_AFFINE, T_AFFINE, 100.0, 100.0)
    assert result.status[0] == ICGN_CONVERGED
    assert abs(result.disp_u[0] - truth[0]) < 0.01
    assert abs(result.disp_v[0] - truth[3]) < 0.01
    assert abs(result.disp_ux[0] - truth[1]) < 5e-4
    assert abs(result.disp_uy[0] - truth[2]) < 5e-4
    assert abs(result.disp_vx[0] - truth[4]) < 5e-4
    assert abs(result.disp_vy[0] - truth[5]) < 5e-4
    assert result.disp_uxx is None


@pytest.mark.parametrize("engine", ENGINES)
def test_affine_second_order(engine):
    """2차 풀이는 affine 변형에서 2차 항 ≈ 0"""
    ref, tar = make_affine_pair(A_AFFINE, T_AFFINE)
    poi = POI2D(100.0, 100.0)
    poi.deformation.u, poi.deformation.v = 3.0, -2.0

    result = _run(ref, tar, [poi], engine, shape_order=2, subset_radius_x=20,
                  subset_radius_y=20)

    truth = affine_truth(A_AFFINE, T_AFFINE, 100.0, 100.0)
    assert result.status[0] == ICGN_CONVERGED
    assert abs(result.disp_u[0] - truth[0]) < 0.01
    assert abs(result.disp_vy[0] - truth[5]) < 5e-4
    for name in ('disp_uxx', 'disp_uxy', 'disp_uyy',
                 'disp_vxx', 'disp_vxy', 'disp_vyy'):
        assert abs(getattr(result, name)[0]) < 1e-4


@pytest.mark.parametrize("engine", ENGINES)
def test_quadratic_second_order(engine):
    ref, tar = make_quadratic_pair(P_QUAD, (100.0, 100.0))
    poi = POI2D(100.0, 100.0)
    poi.deformation.u, poi.deformation.v = 1.0, -1.0

    result = _run(ref, tar, [poi], engine, shape_order=2, subset_radius_x=20,
                  subset_radius_y=20, max_iteration=50)

    p = result.params_of(0)
    assert result.status[0] == ICGN_CONVERGED
    assert abs(p[0] - P_QUAD[0]) < 0.01
    assert abs(p[6] - P_QUAD[6]) < 0.01
    assert np.allclose(p[[1, 2, 7, 8]], P_QUAD[[1, 2, 7, 8]], atol=1e-3)
    assert np.allclose(p[[3, 4, 5, 9, 10, 11]], P_QUAD[[3, 4, 5, 9, 10, 11]],
                       atol=2e-4)


@pytest.mark.parametrize("engine", ENGINES)
def test_rectangular_subset(engine):
    ref, tar = make_translated(shift_x=-1.5, shift_y=0.75)
    pois = [POI2D(100.0, 100.0), POI2D(50.0, 150.0)]

    result = _run(ref, tar, pois, engine, subset_radius_x=20, subset_radius_y=8)

    assert np.all(result.status == ICGN_CONVERGED)
    assert np.max(np.abs(result.disp_u + 1.5)) < 0.01
    assert np.max(np.abs(result.disp_v - 0.75)) < 0.01


def test_poi_location_rounds_to_pixel():
    """서브셋 중심은 가장 가까운 정수 픽셀"""
    ref, tar = make_translated(shift_x=2.0, shift_y=-1.0)
    result = _run(ref, tar, [POI2D(100.4, 99.6), POI2D(100.0, 100.0)], 'thread')

    assert np.array_equal(result.params_of(0), result.params_of(1))
    assert result.points_x[0] == 100.4


# ===== 실패 상태 =====

@pytest.mark.parametrize("engine", ENGINES)
def test_reference_window_out_of_bounds(engine):
    ref = make_reference()
    poi = POI2D(5.0, 100.0)
    poi.deformation.u = 0.5

    result = _run(ref, ref, [poi], engine)

    assert result.status[0] == ICGN_OUT_OF_BOUNDS
    assert result.iterations[0] == 0
    assert result.zncc_values[0] == ZNCC_FAILED
    assert result.disp_u[0] == 0.5


@pytest.mark.parametrize("engine", ENGINES)
def test_target_window_out_of_bounds(engine):
    ref = make_reference()
    poi = POI2D(100.0, 100.0)
    poi.deformation.u = 90.0

    result = _run(ref, ref, [poi], engine)

    assert result.status[0] == ICGN_OUT_OF_BOUNDS
    assert result.iterations[0] == 1
    assert result.zncc_values[0] == ZNCC_FAILED


@pytest.mark.parametrize("engine", ENGINES)
def test_singular_hessian_on_stripes(engine):
    """y 방향 gradient가 없는 세로 줄무늬 → Hessian 특이"""
    xx = np.tile(np.arange(200, dtype=np.float64), (200, 1))
    stripes = 128.0 + 50.0 * np.sin(2.0 * np.pi * xx / 17.0)

    result = _run(stripes, stripes, [POI2D(100.0, 100.0)], engine)

    assert result.status[0] == ICGN_SINGULAR_HESSIAN
    assert result.iterations[0] == 0
    assert result.zncc_values[0] == ZNCC_FAILED


@pytest.mark.parametrize("engine", ENGINES)
def test_flat_reference_subset(engine):
    flat = np.full((200, 200), 100.0)
    result = _run(flat, make_reference(), [POI2D(100.0, 100.0)], engine)

    assert result.status[0] == ICGN_INVALID_SUBSET
    assert result.iterations[0] == 0


@pytest.mark.parametrize("engine", ENGINES)
def test_flat_target_subset(engine):
    result = _run(make_reference(), np.zeros((200, 200)),
                  [POI2D(100.0, 100.0)], engine)

    assert result.status[0] == ICGN_INVALID_SUBSET
    assert result.iterations[0] == 1
    assert result.zncc_values[0] == ZNCC_FAILED


@pytest.mark.parametrize("engine", ENGINES)
def test_max_iteration_reached(engine):
    """반복 한도 도달은 실패가 아님 (파라미터 보고)"""
    ref, tar = make_translated(shift_x=2.0, shift_y=-1.0)
    result = _run(ref, tar, [POI2D(100.0, 100.0)], engine, max_iteration=1)

    assert result.status[0] == ICGN_MAX_ITER_REACHED
    assert result.iterations[0] == 1
    assert result.convergence[0] > 1e-4
    assert result.valid_mask[0]
    assert -1.0 <= result.zncc_values[0] <= 1.0


def test_failure_is_isolated():
    """실패 POI가 다른 POI 결과에 영향을 주지 않음"""
    ref, tar = make_translated(shift_x=2.0, shift_y=-1.0)
    good = POI2D(100.0, 100.0)
    alone = _run(ref, tar, [good], 'numba')
    mixed = _run(ref, tar, [POI2D(3.0, 3.0), good, POI2D(196.0, 100.0)], 'numba')

    assert list(mixed.status) == [ICGN_OUT_OF_BOUNDS, ICGN_CONVERGED,
                                  ICGN_OUT_OF_BOUNDS]
    assert np.array_equal(mixed.params_of(1), alone.params_of(0))
    assert mixed.n_converged == 1
    assert mixed.convergence_rate == pytest.approx(1.0 / 3.0)
    assert mixed.mean_iterations == float(alone.iterations[0])
    assert mixed.mean_zncc == pytest.approx(float(alone.zncc_values[0]))
    assert mixed.status_summary == {'converged': 1, 'out_of_bounds': 2}


def test_worker_buffers_scale_with_slots_not_pois():
    """작업 버퍼 크기는 워커 슬롯 수로만 정해진다"""
    bufs = allocate_worker_buffers(4, 33 * 33, 12)

    assert all(b.shape[0] == 4 for b in bufs.values())
    assert sum(b.nbytes for b in bufs.values()) < 2_000_000


def test_worker_count_does_not_change_results():
    """슬롯 하나가 여러 POI를 재사용해도 결과는 같다"""
    ref, tar = make_affine_pair(A_AFFINE, T_AFFINE)
    pois = make_poi_grid(60.0, 60.0, 3, 3, spacing=30.0)
    config = SolverConfig(subset_radius_x=15, subset_radius_y=15,
                          max_iteration=30, convergence_threshold=1e-4,
                          shape_order=2)

    one = compute_icgn(ref, tar, pois, config, engine='numba', n_workers=1)
    many = compute_icgn(ref, tar, pois, config, engine='numba', n_workers=4)

    assert np.array_equal(one.status, many.status)
    assert np.array_equal(one.iterations, many.iterations)
    for i in range(len(pois)):
        assert np.array_equal(one.params_of(i), many.params_of(i))


@pytest.mark.parametrize("engine", ENGINES)
def test_gaussian_blur_preserves_translation(engine):
    ref, tar = make_translated(shift_x=2.0, shift_y=-1.0)
    result = _run(ref, tar, [POI2D(100.0, 100.0)], engine, gaussian_blur=5)

    assert result.status[0] == ICGN_CONVERGED
    assert abs(result.disp_u[0] - 2.0) < 0.02
    assert abs(result.disp_v[0] + 1.0) < 0.02


# ===== 엔진 / 입력 =====

@pytest.mark.parametrize("shape_order", [1, 2])
def test_engines_agree(shape_order):
    ref, tar = make_affine_pair(A_AFFINE, T_AFFINE)
    pois = make_poi_grid(50.0, 50.0, 3, 3, spacing=40.0)
    for poi in pois:
        truth = affine_truth(A_AFFINE, T_AFFINE, poi.x, poi.y)
        poi.deformation.u = float(np.round(truth[0]))
        poi.deformation.v = float(np.round(truth[3]))

    a = _run(ref, tar, pois, 'numba', shape_order=shape_order,
             max_iteration=60, convergence_threshold=1e-7)
    b = _run(ref, tar, pois, 'thread', shape_order=shape_order,
             max_iteration=60, convergence_threshold=1e-7)

    assert np.array_equal(a.status, b.status)
    assert np.allclose(a.disp_u, b.disp_u, atol=1e-6)
    assert np.allclose(a.disp_v, b.disp_v, atol=1e-6)
    assert np.allclose(a.disp_vy, b.disp_vy, atol=1e-6)
    assert np.allclose(a.zncc_values, b.zncc_values, atol=1e-6)


def test_gradient_kernel_on_ramp():
    yy, xx = np.mgrid[0:40, 0:50].astype(np.float64)
    gx, gy = compute_gradient(3.0 * xx + 2.0 * yy)

    assert np.allclose(gx[2:-2, 2:-2], 3.0, atol=1e-10)
    assert np.allclose(gy[2:-2, 2:-2], 2.0, atol=1e-10)


def test_empty_poi_list():
    ref = make_reference(size=60)
    result = compute_icgn(ref, ref, [], SolverConfig(10, 10))
    assert result.n_points == 0
    assert result.status_summary == {}


def test_invalid_engine_and_shapes():
    ref = make_reference(size=60)
    with pytest.raises(ValueError):
        compute_icgn(ref, ref, [POI2D(30.0, 30.0)], engine='cuda')
    with pytest.raises(ValueError):
        compute_icgn(ref, ref[:50], [POI2D(30.0, 30.0)], SolverConfig(10, 10))
    with pytest.raises(ValueError):
        compute_icgn(ref, ref, [POI2D(30.0, 30.0)], SolverConfig(0, 10))


@pytest.mark.parametrize("engine", ENGINES)
def test_non_finite_poi_raises(engine):
    ref = make_reference(size=60)
    pois = [POI2D(30.0, 30.0), POI2D(np.nan, 30.0)]
    with pytest.raises(ValueError):
        compute_icgn(ref, ref, pois, SolverConfig(10, 10), engine=engine)


def test_apply_result_writes_poi():
    ref, tar = make_translated(shift_x=2.0, shift_y=-1.0)
    poi = POI2D(100.0, 100.0)
    poi.deformation.uxx = 0.5

    result = _run(ref, tar, [poi], 'thread')
    apply_icgn_result([poi], result)

    assert abs(poi.deformation.u - 2.0) < 0.01
    assert poi.deformation.uxx == 0.5
    assert poi.result.icgn_status == ICGN_CONVERGED
    assert poi.result.iteration == int(result.iterations[0])
    assert poi.result.zncc > 0.999
    assert poi.result.convergence < 1e-4


if __name__ == "__main__":
    for eng in ENGINES:
        test_identical_images(eng, 1)
        test_translation_from_zero_guess(eng)
        test_affine_first_order(eng)
        test_affine_second_order(eng)
        test_quadratic_second_order(eng)
        test_rectangular_subset(eng)
        test_reference_window_out_of_bounds(eng)
        test_target_window_out_of_bounds(eng)
        test_singular_hessian_on_stripes(eng)
        test_flat_reference_subset(eng)
        test_flat_target_subset(eng)
        test_max_iteration_reached(eng)
        test_gaussian_blur_preserves_translation(eng)
    test_poi_location_rounds_to_pixel()
    test_failure_is_isolated()
    test_worker_buffers_scale_with_slots_not_pois()
    test_worker_count_does_not_change_results()
    test_engines_agree(1)
    test_engines_agree(2)
    test_gradient_kernel_on_ramp()
    test_empty_poi_list()
    test_invalid_engine_and_shapes()
    for eng in ENGINES:
        test_non_finite_poi_raises(eng)
    test_apply_result_writes_poi()
    print("✅ IC-GN 테스트 통과")
