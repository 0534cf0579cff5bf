"""
특징점 기반 Affine 초기 추정 모듈

외부 특징점 매칭기(SIFT 등)가 준 (ref, tar) 대응쌍으로부터
POI 주변의 국소 affine 변환을 RANSAC으로 추정하여 IC-GN 초기값을 만든다.

처리 순서 (POI별, 서로 독립):
    1. 반경 탐색으로 POI 주변 매칭 특징점 수집
    2. RANSAC: sample_number개 무작위 추출 → 최소제곱 affine → 인라이어 계수
    3. 최다 인라이어 모델의 인라이어 전체로 재추정
    4. POI 위치에서 평가: 변위 = T(POI) - POI, gradient = 선형 계수 - I

References:
    - Jiang, Z. "OpenCorr: An open source library for research and
      development of digital image correlation." Optics and Lasers in
      Engineering, 2023.
    - Fischler, M., Bolles, R. "Random sample consensus." CACM, 1981.
"""

import numpy as np
from typing import Optional, Sequence, Tuple, List
import time
import logging

from ..config import RansacConfig, NeighborSearchConfig
from .nearest_neighbor import NearestNeighborIndex
from .results import (
    AffineEstimate,
    FeatureAffineResult,
    FEATURE_SUCCESS,
    FEATURE_INSUFFICIENT_NEIGHBORS,
    FEATURE_RANSAC_NO_CONSENSUS,
)
from ...models.poi import POI2D, KeypointPair, keypoint_pairs_to_arrays

_logger = logging.getLogger(__name__)


# ===== Affine 최소제곱 =====

def fit_affine(ref_pts: np.ndarray, tar_pts: np.ndarray) -> Optional[np.ndarray]:
    """
    ref → tar 2D affine 최소제곱 추정

    [x, y, 1] @ A^T = [x', y']

    Args:
        ref_pts, tar_pts: (N, 2) 좌표 (N >= 3)

    Returns:
        (2, 3) 행렬 [[a11, a12, tx], [a21, a22, ty]],
        점이 3개 미만이거나 일직선(rank < 3)이면 None
    """
    n = ref_pts.shape[0]
    if n < 3:
        return None

    src = np.hstack([ref_pts, np.ones((n, 1), dtype=np.float64)])
    if np.linalg.matrix_rank(src) < 3:
        return None

    coef, _, _, _ = np.linalg.lstsq(src, tar_pts, rcond=None)  # (3, 2)
    return coef.T


def apply_affine(affine: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """(N, 2) 좌표에 affine 적용"""
    return pts @ affine[:, :2].T + affine[:, 2]


def affine_residuals(affine: np.ndarray, ref_pts: np.ndarray,
                     tar_pts: np.ndarray) -> np.ndarray:
    """대응쌍별 L2 잔차 ||A·ref - tar||"""
    return np.linalg.norm(apply_affine(affine, ref_pts) - tar_pts, axis=1)


def ransac_affine(
    ref_pts: np.ndarray,
    tar_pts: np.ndarray,
    config: RansacConfig,
    min_inliers: int,
    rng: np.random.Generator,
) -> Tuple[Optional[np.ndarray], np.ndarray]:
    """
    RANSAC affine 추정

    최다 인라이어 모델을 유지하며 동률이면 먼저 찾은 모델을 유지한다.
    최종 모델은 유지된 모델의 인라이어 전체로 재추정한 값.

    Args:
        ref_pts, tar_pts: (N, 2) 이웃 대응쌍
        config: RANSAC 설정
        min_inliers: 합의로 인정할 최소 인라이어 수
        rng: 시드 지정 가능한 난수 발생기

    Returns:
        (affine, inlier_mask). 합의 실패 시 affine은 None이고
        inlier_mask는 최선 시행의 마스크 (없으면 모두 False)
    """
    n = ref_pts.shape[0]
    best_mask = np.zeros(n, dtype=bool)
    best_count = 0

    if n < config.sample_number:
        return None, best_mask

    for _ in range(config.trial_number):
        sample = rng.choice(n, size=config.sample_number, replace=False)
        model = fit_affine(ref_pts[sample], tar_pts[sample])
        if model is None:
            continue

        mask = affine_residuals(model, ref_pts, tar_pts) < config.error_threshold
        count = int(np.count_nonzero(mask))
        if count > best_count:
            best_count = count
            best_mask = mask

    if best_count < min_inliers:
        return None, best_mask

    refit = fit_affine(ref_pts[best_mask], tar_pts[best_mask])
    return refit, best_mask


# ===== 추정기 =====

class FeatureAffineEstimator:
    """
    특징점 기반 affine 초기 추정기

    Usage:
        estimator = FeatureAffineEstimator(16, 16, seed=0)
        estimator.set_keypoint_pairs(ref_kp, tar_kp)
        estimator.prepare()
        result = estimator.compute_queue(poi_queue)
    """

    def __init__(self,
                 subset_radius_x: int,
                 subset_radius_y: int,
                 neighbor_config: Optional[NeighborSearchConfig] = None,
                 ransac_config: Optional[RansacConfig] = None,
                 seed: Optional[int] = None):
        self.subset_radius_x = subset_radius_x
        self.subset_radius_y = subset_radius_y
        self.neighbor_config = neighbor_config or NeighborSearchConfig()
        self.ransac_config = ransac_config or RansacConfig()
        self.seed = seed

        self.ref_kp = np.empty((0, 2), dtype=np.float64)
        self.tar_kp = np.empty((0, 2), dtype=np.float64)
        self._index: Optional[NearestNeighborIndex] = None

    @property
    def search_radius(self) -> float:
        return self.neighbor_config.resolve_radius(
            self.subset_radius_x, self.subset_radius_y)

    def set_keypoint_pairs(self, ref_kp, tar_kp=None) -> None:
        """
        매칭 특징점 설정

        set_keypoint_pairs(ref (N, 2), tar (N, 2)) 또는
        set_keypoint_pairs([KeypointPair, ...])
        """
        if tar_kp is None:
            ref, tar = keypoint_pairs_to_arrays(ref_kp)
        else:
            ref = np.asarray(ref_kp, dtype=np.float64).reshape(-1, 2)
            tar = np.asarray(tar_kp, dtype=np.float64).reshape(-1, 2)

        if ref.shape != tar.shape:
            raise ValueError(
                f"ref/tar keypoint count mismatch: {len(ref)} vs {len(tar)}")

        self.ref_kp = ref
        self.tar_kp = tar
        self._index = None

    def prepare(self) -> None:
        """설정 검증 + 참조 특징점 인덱스 구축"""
        if self.subset_radius_x <= 0 or self.subset_radius_y <= 0:
            raise ValueError(
                f"subset radius must be > 0, got "
                f"({self.subset_radius_x}, {self.subset_radius_y})")
        self.ransac_config.validate()
        self.neighbor_config.validate(self.ransac_config)

        self._index = NearestNeighborIndex(self.ref_kp)
        _logger.debug(f"특징점 인덱스 구축: {len(self._index)} pairs, "
                      f"radius={self.search_radius:.2f}")

    def spawn_generators(self, n: int) -> List[np.random.Generator]:
        """
        POI 인덱스별 독립 난수 발생기

        결과가 (seed, POI 인덱스, 입력)에만 의존하도록 SeedSequence를
        POI 수만큼 분기한다. 스레드 스케줄링과 무관하게 재현 가능.
        """
        children = np.random.SeedSequence(self.seed).spawn(n)
        return [np.random.default_rng(child) for child in children]

    def _collect_neighbors(self, center: Tuple[int, int]) -> np.ndarray:
        cfg = self.neighbor_config
        neighbors = self._index.query(center, self.search_radius)

        if (len(neighbors) < cfg.min_neighbor_num and cfg.knn_fallback
                and len(self._index) >= cfg.min_neighbor_num):
            neighbors = self._index.query_k(center, cfg.min_neighbor_num)

        return neighbors

    def estimate_at(self, poi: POI2D,
                    rng: Optional[np.random.Generator] = None) -> AffineEstimate:
        """
        POI 하나의 초기 추정 (POI는 수정하지 않음)

        이웃 탐색과 affine 평가는 POI 좌표 자체가 아니라 반올림한 서브셋
        중심 poi.center에서 한다. IC-GN이 같은 픽셀을 중심으로 풀기 때문에
        소수점 POI에서는 (poi.x, poi.y) 평가값과 (A - I)·(center - POI)만큼
        다르다.
        """
        if self._index is None:
            raise RuntimeError("prepare() must be called before compute()")
        if rng is None:
            rng = np.random.default_rng(self.seed)

        cx, cy = poi.center
        neighbors = self._collect_neighbors((cx, cy))
        n_neighbors = len(neighbors)

        if n_neighbors < self.neighbor_config.min_neighbor_num:
            return AffineEstimate(status=FEATURE_INSUFFICIENT_NEIGHBORS,
                                  n_neighbors=n_neighbors)

        affine, inliers = ransac_affine(
            self.ref_kp[neighbors], self.tar_kp[neighbors],
            self.ransac_config, self.neighbor_config.min_neighbor_num, rng)

        if affine is None:
            return AffineEstimate(status=FEATURE_RANSAC_NO_CONSENSUS,
                                  n_neighbors=n_neighbors)

        mapped = apply_affine(affine, np.array([[cx, cy]], dtype=np.float64))[0]
        return AffineEstimate(
            u=float(mapped[0] - cx),
            ux=float(affine[0, 0] - 1.0),
            uy=float(affine[0, 1]),
            v=float(mapped[1] - cy),
            vx=float(affine[1, 0]),
            vy=float(affine[1, 1] - 1.0),
            feature=int(np.count_nonzero(inliers)),
            status=FEATURE_SUCCESS,
            n_neighbors=n_neighbors,
        )

    def compute(self, poi: POI2D,
                rng: Optional[np.random.Generator] = None) -> AffineEstimate:
        """POI 하나의 초기 추정 후 POI에 in-place 기록"""
        estimate = self.estimate_at(poi, rng)
        apply_estimate(poi, estimate)
        return estimate

    def compute_queue(self, poi_queue: Sequence[POI2D]) -> FeatureAffineResult:
        """POI 큐 전체 순차 처리"""
        start_time = time.time()
        rngs = self.spawn_generators(len(poi_queue))
        estimates = [self.compute(poi, rng) for poi, rng in zip(poi_queue, rngs)]

        return FeatureAffineResult.from_estimates(
            [p.x for p in poi_queue], [p.y for p in poi_queue], estimates,
            search_radius=self.search_radius,
            processing_time=time.time() - start_time)


def apply_estimate(poi: POI2D, estimate: AffineEstimate) -> None:
    """
    초기 추정 결과를 POI에 기록

    실패 POI는 변형을 0으로 두고 feature = 0으로 표시한다.
    """
    poi.deformation.reset()
    if estimate.is_valid:
        poi.deformation.set_params(estimate.params, shape_order=1)

    poi.result.feature = estimate.feature
    poi.result.feature_status = estimate.status
    poi.result.u0 = poi.deformation.u
    poi.result.v0 = poi.deformation.v
