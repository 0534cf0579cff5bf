"""
DIC 설정 데이터 클래스

모든 설정은 배치 시작 전에 validate()로 검증되며, 잘못된 값은
POI 처리 전에 ValueError로 보고된다.
"""

import math
from dataclasses import dataclass
from typing import Optional


@dataclass
class RansacConfig:
    """RANSAC 설정"""
    trial_number: int = 20        # 최대 시행 횟수
    sample_number: int = 5        # 시행당 샘플 수 (affine 최소 3)
    error_threshold: float = 1.5  # 인라이어 판정 잔차 (픽셀)

    def validate(self) -> None:
        if self.trial_number <= 0:
            raise ValueError(f"trial_number must be > 0, got {self.trial_number}")
        if self.sample_number < 3:
            raise ValueError(
                f"sample_number must be >= 3 for an affine fit, "
                f"got {self.sample_number}")
        if not self.error_threshold > 0:
            raise ValueError(
                f"error_threshold must be > 0, got {self.error_threshold}")


@dataclass
class NeighborSearchConfig:
    """POI 주변 매칭 특징점 탐색 설정"""
    search_radius: Optional[float] = None  # None이면 sqrt(rx² + ry²)
    min_neighbor_num: int = 7
    knn_fallback: bool = False  # 반경 내 이웃 부족 시 최근접 min_neighbor_num개 사용

    def resolve_radius(self, subset_radius_x: int, subset_radius_y: int) -> float:
        if self.search_radius is None:
            return math.sqrt(subset_radius_x ** 2 + subset_radius_y ** 2)
        return float(self.search_radius)

    def validate(self, ransac_config: Optional[RansacConfig] = None) -> None:
        if self.search_radius is not None and not self.search_radius > 0:
            raise ValueError(
                f"search_radius must be > 0, got {self.search_radius}")
        if self.min_neighbor_num < 3:
            raise ValueError(
                f"min_neighbor_num must be >= 3, got {self.min_neighbor_num}")
        if (ransac_config is not None
                and self.min_neighbor_num < ransac_config.sample_number):
            raise ValueError(
                f"min_neighbor_num ({self.min_neighbor_num}) must be >= "
                f"sample_number ({ransac_config.sample_number})")


@dataclass
class SolverConfig:
    """IC-GN 설정"""
    subset_radius_x: int = 16
    subset_radius_y: int = 16
    max_iteration: int = 10
    convergence_threshold: float = 0.001
    shape_order: int = 1              # 1: affine, 2: quadratic
    interpolation_order: int = 5      # B-spline 차수 (3 또는 5)
    gaussian_blur: Optional[int] = None

    @property
    def subset_width(self) -> int:
        return 2 * self.subset_radius_x + 1

    @property
    def subset_height(self) -> int:
        return 2 * self.subset_radius_y + 1

    @property
    def n_pixels(self) -> int:
        return self.subset_width * self.subset_height

    @property
    def n_params(self) -> int:
        return 6 if self.shape_order == 1 else 12

    @property
    def shape_function(self) -> str:
        return 'affine' if self.shape_order == 1 else 'quadratic'

    def validate(self) -> None:
        if self.subset_radius_x <= 0 or self.subset_radius_y <= 0:
            raise ValueError(
                f"subset radius must be > 0, got "
                f"({self.subset_radius_x}, {self.subset_radius_y})")
        if self.max_iteration <= 0:
            raise ValueError(
                f"max_iteration must be > 0, got {self.max_iteration}")
        if not self.convergence_threshold > 0:
            raise ValueError(
                f"convergence_threshold must be > 0, "
                f"got {self.convergence_threshold}")
        if self.shape_order not in (1, 2):
            raise ValueError(
                f"shape_order must be 1 or 2, got {self.shape_order}")
        if self.interpolation_order not in (3, 5):
            raise ValueError(
                f"interpolation_order must be 3 or 5, "
                f"got {self.interpolation_order}")
        if self.gaussian_blur is not None and self.gaussian_blur < 0:
            raise ValueError(
                f"gaussian_blur must be None or >= 0, got {self.gaussian_blur}")
