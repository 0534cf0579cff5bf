"""
특징점 기반 affine 초기 추정 테스트

검증 항목:
    1. 최소제곱 affine 정확 복원, 일직선 샘플 거부
    2. 이상치가 섞인 대응쌍에서 RANSAC 복원 + 인라이어 수
    3. POI 위치 평가 (변위, gradient, feature, u0/v0)
    4. 이웃 부족 / 합의 실패 처리
    5. 시드 고정 재현성
"""

import numpy as np
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from featdic.core.config import RansacConfig, NeighborSearchConfig
from featdic.core.initial_guess import (
    FeatureAffineEstimator,
    fit_affine,
    ransac_affine,
    affine_residuals,
    FEATURE_SUCCESS,
    FEATURE_INSUFFICIENT_NEIGHBORS,
    FEATURE_RANSAC_NO_CONSENSUS,
)
from featdic.models import POI2D, KeypointPair, Point2D, STATUS_NOT_RUN

A_TRUE = np.array([[1.02, 0.01], [-0.015, 0.985]])
T_TRUE = np.array([3.5, -2.25])


def _cluster(center, n, radius, seed):
    """center 주변 반경 radius 안의 무작위 점"""
    rng = np.random.default_rng(seed)
    r = radius * np.sqrt(rng.uniform(0.0, 1.0, n))
    a = rng.uniform(0.0, 2.0 * np.pi, n)
    return np.column_stack([center[0] + r * np.cos(a), center[1] + r * np.sin(a)])


def _map(pts):
    return pts @ A_TRUE.T + T_TRUE


def _with_outliers(ref, n_outliers, seed):
    tar = _map(ref)
    rng = np.random.default_rng(seed)
    angles = rng.uniform(0.0, 2.0 * np.pi, n_outliers)
    tar[-n_outliers:, 0] += 12.0 * np.cos(angles)
    tar[-n_outliers:, 1] += 12.0 * np.sin(angles)
    return tar


# ===== 최소제곱 affine =====

def test_fit_affine_exact():
    ref = _cluster((50.0, 50.0), 10, 20.0, seed=1)
    affine = fit_affine(ref, _map(ref))

    assert affine.shape == (2, 3)
    assert np.allclose(affine[:, :2], A_TRUE, atol=1e-10)
    assert np.allclose(affine[:, 2], T_TRUE, atol=1e-8)
    assert np.max(affine_residuals(affine, ref, _map(ref))) < 1e-8


def test_fit_affine_rejects_degenerate():
    """3점 미만 또는 일직선 샘플은 None"""
    line = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [5.0, 5.0]])
    assert fit_affine(line, _map(line)) is None
    assert fit_affine(line[:2], _map(line[:2])) is None


# ===== RANSAC =====

def test_ransac_with_outliers():
    """알려진 affine + 이상치 → 변환 복원, 인라이어 = 비이상치 수"""
    ref = _cluster((100.0, 100.0), 40, 20.0, seed=2)
    tar = _with_outliers(ref, 8, seed=3)
    config = RansacConfig(trial_number=200, sample_number=5, error_threshold=1.0)

    affine, inliers = ransac_affine(ref, tar, config, min_inliers=7,
                                    rng=np.random.default_rng(0))

    assert affine is not None
    assert np.allclose(affine[:, :2], A_TRUE, atol=1e-8)
    assert np.allclose(affine[:, 2], T_TRUE, atol=1e-6)
    assert int(np.count_nonzero(inliers)) == 32
    assert not np.any(inliers[-8:])


def test_ransac_no_consensus():
    """모든 쌍이 무작위면 min_inliers에 도달하지 못함"""
    rng = np.random.default_rng(5)
    ref = rng.uniform(0, 40, (20, 2))
    tar = rng.uniform(0, 40, (20, 2))
    config = RansacConfig(trial_number=50, sample_number=5, error_threshold=0.01)

    affine, _ = ransac_affine(ref, tar, config, min_inliers=15,
                              rng=np.random.default_rng(0))

    assert affine is None


# ===== 추정기 =====

def _estimator(ref, tar, seed=0, **neighbor):
    neighbor.setdefault('min_neighbor_num', 7)
    estimator = FeatureAffineEstimator(
        16, 16,
        NeighborSearchConfig(**neighbor),
        RansacConfig(trial_number=200, sample_number=5, error_threshold=1.0),
        seed=seed)
    estimator.set_keypoint_pairs(ref, tar)
    estimator.prepare()
    return estimator


def test_compute_evaluates_at_poi():
    """POI 위치에서 변위 = T(POI) - POI, gradient = A - I"""
    center = (100.0, 100.0)
    ref = _cluster(center, 40, 20.0, seed=2)
    tar = _with_outliers(ref, 8, seed=3)
    estimator = _estimator(ref, tar)

    poi = POI2D(*center)
    estimate = estimator.compute(poi)

    expected = A_TRUE @ np.array(center) + T_TRUE - np.array(center)
    assert estimate.status == FEATURE_SUCCESS
    assert abs(poi.deformation.u - expected[0]) < 1e-6
    assert abs(poi.deformation.v - expected[1]) < 1e-6
    assert abs(poi.deformation.ux - (A_TRUE[0, 0] - 1.0)) < 1e-8
    assert abs(poi.deformation.uy - A_TRUE[0, 1]) < 1e-8
    assert abs(poi.deformation.vx - A_TRUE[1, 0]) < 1e-8
    assert abs(poi.deformation.vy - (A_TRUE[1, 1] - 1.0)) < 1e-8
    assert poi.deformation.uxx == 0.0 and poi.deformation.vyy == 0.0
    assert poi.result.feature == 32
    assert poi.result.u0 == poi.deformation.u
    assert poi.result.v0 == poi.deformation.v
    assert not poi.low_confidence


def test_compute_uses_rounded_center():
    """서브셋 중심과 같은 반올림 픽셀에서 평가"""
    ref = _cluster((100.0, 100.0), 30, 20.0, seed=4)
    estimator = _estimator(ref, _map(ref))

    poi = POI2D(100.4, 99.6)
    estimator.compute(poi)

    expected = A_TRUE @ np.array([100.0, 100.0]) + T_TRUE - 100.0
    assert abs(poi.deformation.u - expected[0]) < 1e-6
    assert abs(poi.deformation.v - expected[1]) < 1e-6


def test_insufficient_neighbors():
    """이웃 부족: 변형 0, feature 0, 낮은 신뢰도 표시 (치명적이지 않음)"""
    ref = _cluster((20.0, 20.0), 30, 10.0, seed=6)
    estimator = _estimator(ref, _map(ref))

    poi = POI2D(150.0, 150.0)
    poi.deformation.u = 9.0
    estimate = estimator.compute(poi)

    assert estimate.status == FEATURE_INSUFFICIENT_NEIGHBORS
    assert poi.result.feature_status == FEATURE_INSUFFICIENT_NEIGHBORS
    assert poi.deformation.u == 0.0 and poi.deformation.v == 0.0
    assert poi.result.feature == 0
    assert poi.low_confidence


def test_knn_fallback():
    """반경 내 이웃 부족 시 최근접 min_neighbor_num개로 추정"""
    ref = _cluster((60.0, 60.0), 30, 10.0, seed=7)
    estimator = _estimator(ref, _map(ref), knn_fallback=True)

    poi = POI2D(100.0, 100.0)
    estimate = estimator.compute(poi)

    assert estimate.status == FEATURE_SUCCESS
    assert estimate.n_neighbors == 7
    assert abs(estimate.ux - (A_TRUE[0, 0] - 1.0)) < 1e-8


def test_ransac_no_consensus_status():
    rng = np.random.default_rng(8)
    ref = _cluster((50.0, 50.0), 20, 15.0, seed=9)
    tar = ref + rng.uniform(-20, 20, ref.shape)
    estimator = FeatureAffineEstimator(
        16, 16,
        NeighborSearchConfig(min_neighbor_num=15),
        RansacConfig(trial_number=30, sample_number=5, error_threshold=0.05),
        seed=0)
    estimator.set_keypoint_pairs(ref, tar)
    estimator.prepare()

    poi = POI2D(50.0, 50.0)
    estimate = estimator.compute(poi)

    assert estimate.status == FEATURE_RANSAC_NO_CONSENSUS
    assert poi.result.feature == 0
    assert poi.low_confidence


def test_keypoint_pair_objects():
    ref = _cluster((80.0, 80.0), 20, 15.0, seed=10)
    tar = _map(ref)
    pairs = [KeypointPair(Point2D(*r), Point2D(*t)) for r, t in zip(ref, tar)]

    estimator = FeatureAffineEstimator(16, 16, seed=0)
    estimator.set_keypoint_pairs(pairs)
    estimator.prepare()

    assert np.allclose(estimator.ref_kp, ref)
    assert estimator.estimate_at(POI2D(80.0, 80.0)).is_valid


def test_compute_before_prepare_raises():
    estimator = FeatureAffineEstimator(16, 16)
    estimator.set_keypoint_pairs(np.zeros((5, 2)), np.zeros((5, 2)))
    with pytest.raises(RuntimeError):
        estimator.compute(POI2D(1.0, 1.0))


def test_keypoint_count_mismatch_raises():
    estimator = FeatureAffineEstimator(16, 16)
    with pytest.raises(ValueError):
        estimator.set_keypoint_pairs(np.zeros((5, 2)), np.zeros((4, 2)))


def test_min_neighbor_below_sample_number_raises():
    estimator = FeatureAffineEstimator(
        16, 16, NeighborSearchConfig(min_neighbor_num=4), RansacConfig(sample_number=5))
    with pytest.raises(ValueError):
        estimator.prepare()


def test_queue_is_reproducible_with_seed():
    """같은 시드 → 같은 결과 (노이즈 있는 특징점)"""
    rng = np.random.default_rng(11)
    ref = rng.uniform(10, 190, (800, 2))
    tar = _map(ref) + rng.normal(0.0, 0.3, ref.shape)
    tar[-80:] += rng.uniform(-15, 15, (80, 2))

    def run(seed):
        estimator = _estimator(ref, tar, seed=seed)
        pois = [POI2D(x, y) for y in range(40, 170, 30) for x in range(40, 170, 30)]
        return estimator.compute_queue(pois)

    a = run(123)
    b = run(123)

    assert np.array_equal(a.disp_u, b.disp_u)
    assert np.array_equal(a.disp_vy, b.disp_vy)
    assert np.array_equal(a.feature, b.feature)
    assert np.array_equal(a.status, b.status)
    assert a.n_valid == a.n_points


def test_status_defaults_before_run():
    poi = POI2D(1.0, 2.0)
    assert poi.result.feature_status == STATUS_NOT_RUN
    assert not poi.low_confidence


if __name__ == "__main__":
    test_fit_affine_exact()
    test_fit_affine_rejects_degenerate()
    test_ransac_with_outliers()
    test_ransac_no_consensus()
    test_compute_evaluates_at_poi()
    test_compute_uses_rounded_center()
    test_insufficient_neighbors()
    test_knn_fallback()
    test_ransac_no_consensus_status()
    test_keypoint_pair_objects()
    test_compute_before_prepare_raises()
    test_keypoint_count_mismatch_raises()
    test_min_neighbor_below_sample_number_raises()
    test_queue_is_reproducible_with_seed()
    test_status_defaults_before_run()
    print("✅ FeatureAffineEstimator 테스트 통과")
