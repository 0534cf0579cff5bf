"""
병렬 배치 처리 모듈

POI 큐 전체에 대해 특징점 기반 초기 추정과 IC-GN 최적화를 실행한다.
POI 사이에는 공유 가변 상태가 없으며 이미지, 특징점, 탐색 인덱스는
병렬 구간에서 읽기 전용이다.

    strategy='thread': NumPy 풀이 + ThreadPoolExecutor(n_workers)
    strategy='numba':  Numba prange 커널, numba.set_num_threads(n_workers)
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional, Sequence, List, Dict, Any
from concurrent.futures import ThreadPoolExecutor
import time
import os
import logging

from ..core.config import SolverConfig, NeighborSearchConfig, RansacConfig
from ..core.initial_guess.feature_affine import FeatureAffineEstimator, apply_estimate
from ..core.initial_guess.results import FeatureAffineResult
from ..core.optimization.icgn import (
    compute_icgn,
    apply_icgn_result,
    prepare_ref_cache,
    ENGINES,
    _to_gray,
)
from ..core.optimization.results import ICGNResult
from ..core.optimization.icgn_core_numba import warmup_icgn_core
from ..core.optimization.interpolation_numba import warmup_numba_interp
from ..core.optimization.shape_function_numba import warmup_numba_shape
from ..models.poi import POI2D

_logger = logging.getLogger(__name__)


def as_image(data, width: Optional[int] = None,
             height: Optional[int] = None) -> np.ndarray:
    """
    입력 이미지를 2D float64 그레이스케일 배열로 변환

    Args:
        data: 2D/3채널 배열, 또는 행 우선 평탄 배열 (width, height 지정)
        width, height: 평탄 배열의 크기
    """
    if data is None:
        raise ValueError("이미지가 None입니다")

    arr = np.asarray(data)
    if width is not None or height is not None:
        if width is None or height is None:
            raise ValueError("width and height must be given together")
        if arr.size != width * height:
            raise ValueError(
                f"flat image has {arr.size} samples, "
                f"expected {width}x{height}={width * height}")
        arr = arr.reshape(height, width)

    if arr.ndim == 3:
        arr = _to_gray(arr)
    if arr.ndim != 2:
        raise ValueError(f"image must be 2-D, got shape {arr.shape}")

    return arr.astype(np.float64)


@dataclass
class BatchResult:
    """초기 추정 + IC-GN 결과"""
    initial: FeatureAffineResult
    refined: ICGNResult
    pois: Sequence[POI2D]

    @property
    def processing_time(self) -> float:
        return self.initial.processing_time + self.refined.processing_time

    def to_records(self) -> List[Dict[str, Any]]:
        """POI별 출력 레코드 (외부 exporter용)"""
        return [poi.to_record() for poi in self.pois]


class ParallelDispatcher:
    """
    POI 큐 병렬 처리기

    Usage:
        dispatcher = ParallelDispatcher(SolverConfig(16, 16), seed=0)
        result = dispatcher.run(ref, tar, pois, ref_kp, tar_kp)
    """

    def __init__(self,
                 solver_config: Optional[SolverConfig] = None,
                 neighbor_config: Optional[NeighborSearchConfig] = None,
                 ransac_config: Optional[RansacConfig] = None,
                 n_workers: Optional[int] = None,
                 strategy: str = 'numba',
                 seed: Optional[int] = None):
        """
        Args:
            solver_config: IC-GN 설정
            neighbor_config: 특징점 이웃 탐색 설정
            ransac_config: RANSAC 설정
            n_workers: 병렬 워커 수 (None = CPU 코어 수 - 1)
            strategy: 'numba' 또는 'thread'
            seed: RANSAC 난수 시드 (None이면 매 실행 새 엔트로피)
        """
        self.solver_config = solver_config or SolverConfig()
        self.neighbor_config = neighbor_config or NeighborSearchConfig()
        self.ransac_config = ransac_config or RansacConfig()
        self.strategy = strategy
        self.seed = seed

        if n_workers is None:
            self.n_workers = max(1, (os.cpu_count() or 2) - 1)
        else:
            self.n_workers = n_workers

    # ===== 검증 =====

    def validate_config(self) -> None:
        """설정 검증 (POI 처리 전)"""
        if self.strategy not in ENGINES:
            raise ValueError(
                f"strategy must be one of {ENGINES}, got '{self.strategy}'")
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")
        self.solver_config.validate()
        self.ransac_config.validate()
        self.neighbor_config.validate(self.ransac_config)

    def validate_inputs(self, ref_image, tar_image, pois: Sequence[POI2D],
                        width: Optional[int] = None,
                        height: Optional[int] = None):
        """
        배치 단위 입력 검증. 실패 시 POI 처리 전에 ValueError.

        width, height를 주면 두 이미지를 행 우선 평탄 배열로 본다.

        Returns:
            (ref, tar) 2D float64 그레이스케일 이미지
        """
        self.validate_config()

        if pois is None or len(pois) == 0:
            raise ValueError("POI queue is empty")

        coords = np.array([(p.x, p.y) for p in pois], dtype=np.float64)
        finite = np.all(np.isfinite(coords), axis=1)
        if not np.all(finite):
            bad = int(np.argmin(finite))
            raise ValueError(
                f"POI coordinates must be finite, POI {bad} is "
                f"({pois[bad].x}, {pois[bad].y})")

        if ref_image is None or tar_image is None:
            raise ValueError("이미지가 None입니다")

        if width is None and height is None:
            for name, img in (('ref', ref_image), ('tar', tar_image)):
                ndim = np.ndim(img)
                if ndim not in (2, 3):
                    raise ValueError(
                        f"{name} image must be 2-D (or 3-channel), "
                        f"got shape {np.shape(img)}")

        ref = as_image(ref_image, width, height)
        tar = as_image(tar_image, width, height)
        if ref.shape != tar.shape:
            raise ValueError(
                f"image shape mismatch: ref {ref.shape} vs tar {tar.shape}")
        return ref, tar

    # ===== 단계 =====

    def estimate(self, ref_image, tar_image, pois: Sequence[POI2D],
                 ref_kp, tar_kp=None, width: Optional[int] = None,
                 height: Optional[int] = None) -> FeatureAffineResult:
        """
        특징점 기반 초기 추정 (POI in-place 기록)

        POI i는 SeedSequence(seed)의 i번째 자식 난수 발생기를 쓰므로
        결과는 스레드 스케줄링과 무관하다.
        """
        self.validate_inputs(ref_image, tar_image, pois, width, height)
        start_time = time.time()

        cfg = self.solver_config
        estimator = FeatureAffineEstimator(
            cfg.subset_radius_x, cfg.subset_radius_y,
            self.neighbor_config, self.ransac_config, seed=self.seed)
        estimator.set_keypoint_pairs(ref_kp, tar_kp)
        estimator.prepare()

        n_points = len(pois)
        _logger.info(f"초기 추정 시작: {n_points} POIs, "
                     f"{len(estimator.ref_kp)} keypoint pairs, "
                     f"radius={estimator.search_radius:.2f}, "
                     f"workers={self.n_workers}")

        rngs = estimator.spawn_generators(n_points)
        with ThreadPoolExecutor(max_workers=self.n_workers) as executor:
            estimates = list(executor.map(estimator.estimate_at, pois, rngs))

        for poi, estimate in zip(pois, estimates):
            apply_estimate(poi, estimate)

        result = FeatureAffineResult.from_estimates(
            [p.x for p in pois], [p.y for p in pois], estimates,
            search_radius=estimator.search_radius,
            processing_time=time.time() - start_time)

        _logger.info(f"초기 추정 완료: {result.n_valid}/{n_points} 성공 "
                     f"({result.valid_ratio*100:.1f}%), "
                     f"mean_feature={result.mean_feature:.1f}, "
                     f"{result.processing_time:.3f}s")
        if result.n_valid < n_points:
            _logger.warning(f"초기 추정 실패 POI: {result.status_summary}")

        return result

    def refine(self, ref_image, tar_image, pois: Sequence[POI2D],
               width: Optional[int] = None,
               height: Optional[int] = None) -> ICGNResult:
        """IC-GN 서브픽셀 최적화 (POI in-place 기록)"""
        ref, tar = self.validate_inputs(ref_image, tar_image, pois, width, height)

        ref_cache = prepare_ref_cache(ref, self.solver_config)
        result = compute_icgn(
            ref, tar, pois,
            config=self.solver_config,
            engine=self.strategy,
            n_workers=self.n_workers,
            ref_cache=ref_cache)

        apply_icgn_result(pois, result)
        return result

    def run(self, ref_image, tar_image, pois: Sequence[POI2D],
            ref_kp, tar_kp=None, width: Optional[int] = None,
            height: Optional[int] = None) -> BatchResult:
        """
        초기 추정 → IC-GN

        이미지는 2D / 3채널 배열, 또는 width와 height를 함께 준 행 우선
        평탄 배열. 평탄 배열을 크기 없이 넘기면 ValueError.
        """
        ref, tar = self.validate_inputs(ref_image, tar_image, pois, width, height)
        initial = self.estimate(ref, tar, pois, ref_kp, tar_kp)
        refined = self.refine(ref, tar, pois)
        return BatchResult(initial=initial, refined=refined, pois=pois)

    @staticmethod
    def warmup() -> None:
        """Numba 커널 사전 컴파일"""
        start_time = time.time()
        warmup_numba_shape()
        warmup_numba_interp()
        warmup_icgn_core()
        _logger.info(f"Numba 워밍업 완료: {time.time() - start_time:.2f}s")
