"""특징점 기반 초기 추정 모듈"""

from .nearest_neighbor import NearestNeighborIndex
from .feature_affine import (
    FeatureAffineEstimator,
    fit_affine,
    apply_affine,
    affine_residuals,
    ransac_affine,
    apply_estimate,
)
from .results import (
    AffineEstimate,
    FeatureAffineResult,
    FEATURE_SUCCESS,
    FEATURE_INSUFFICIENT_NEIGHBORS,
    FEATURE_RANSAC_NO_CONSENSUS,
    FEATURE_STATUS_NAMES,
)

__all__ = [
    # 탐색
    'NearestNeighborIndex',

    # 추정
    'FeatureAffineEstimator',
    'fit_affine',
    'apply_affine',
    'affine_residuals',
    'ransac_affine',
    'apply_estimate',

    # 결과
    'AffineEstimate',
    'FeatureAffineResult',
    'FEATURE_SUCCESS',
    'FEATURE_INSUFFICIENT_NEIGHBORS',
    'FEATURE_RANSAC_NO_CONSENSUS',
    'FEATURE_STATUS_NAMES',
]
