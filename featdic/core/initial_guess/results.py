"""
특징점 기반 초기 추정 결과 데이터 모델
"""

from dataclasses import dataclass
from typing import Dict
import numpy as np


# 상태 코드 상수
FEATURE_SUCCESS = 0
FEATURE_INSUFFICIENT_NEIGHBORS = 1
FEATURE_RANSAC_NO_CONSENSUS = 2

FEATURE_STATUS_NAMES = {
    FEATURE_SUCCESS: 'success',
    FEATURE_INSUFFICIENT_NEIGHBORS: 'insufficient_neighbors',
    FEATURE_RANSAC_NO_CONSENSUS: 'ransac_no_consensus',
}


@dataclass
class AffineEstimate:
    """단일 POI 초기 추정 결과"""
    u: float = 0.0
    ux: float = 0.0
    uy: float = 0.0
    v: float = 0.0
    vx: float = 0.0
    vy: float = 0.0
    feature: int = 0
    status: int = FEATURE_INSUFFICIENT_NEIGHBORS
    n_neighbors: int = 0

    @property
    def is_valid(self) -> bool:
        return self.status == FEATURE_SUCCESS

    @property
    def params(self) -> np.ndarray:
        """1차 파라미터 벡터 [u, ux, uy, v, vx, vy]"""
        return np.array([self.u, self.ux, self.uy, self.v, self.vx, self.vy],
                        dtype=np.float64)


@dataclass
class FeatureAffineResult:
    """특징점 기반 초기 추정 전체 결과"""
    points_x: np.ndarray
    points_y: np.ndarray
    disp_u: np.ndarray
    disp_v: np.ndarray
    disp_ux: np.ndarray
    disp_uy: np.ndarray
    disp_vx: np.ndarray
    disp_vy: np.ndarray
    feature: np.ndarray
    n_neighbors: np.ndarray
    status: np.ndarray

    search_radius: float = 0.0
    processing_time: float = 0.0

    @property
    def n_points(self) -> int:
        return len(self.points_x)

    @property
    def valid_mask(self) -> np.ndarray:
        return self.status == FEATURE_SUCCESS

    @property
    def n_valid(self) -> int:
        return int(np.sum(self.valid_mask))

    @property
    def valid_ratio(self) -> float:
        if self.n_points == 0:
            return 0.0
        return self.n_valid / self.n_points

    @property
    def mean_feature(self) -> float:
        if self.n_valid == 0:
            return 0.0
        return float(np.mean(self.feature[self.valid_mask]))

    @property
    def status_summary(self) -> Dict[str, int]:
        """상태별 POI 수 요약"""
        summary = {}
        for code, name in FEATURE_STATUS_NAMES.items():
            count = int(np.sum(self.status == code))
            if count > 0:
                summary[name] = count
        return summary

    @classmethod
    def from_estimates(cls, points_x, points_y, estimates,
                       search_radius: float = 0.0,
                       processing_time: float = 0.0) -> 'FeatureAffineResult':
        """AffineEstimate 리스트 → 배열 결과"""
        def column(name, dtype=np.float64):
            return np.array([getattr(e, name) for e in estimates], dtype=dtype)

        return cls(
            points_x=np.asarray(points_x, dtype=np.float64),
            points_y=np.asarray(points_y, dtype=np.float64),
            disp_u=column('u'),
            disp_v=column('v'),
            disp_ux=column('ux'),
            disp_uy=column('uy'),
            disp_vx=column('vx'),
            disp_vy=column('vy'),
            feature=column('feature', np.int32),
            n_neighbors=column('n_neighbors', np.int32),
            status=column('status', np.int32),
            search_radius=search_radius,
            processing_time=processing_time,
        )
