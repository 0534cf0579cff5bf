"""특징점 기반 초기 추정 + IC-GN 핵심 모듈"""

from .config import RansacConfig, NeighborSearchConfig, SolverConfig
from .initial_guess import (
    NearestNeighborIndex,
    FeatureAffineEstimator,
    FeatureAffineResult,
    AffineEstimate,
)
from .optimization import (
    compute_icgn,
    apply_icgn_result,
    ICGNResult,
)

__all__ = [
    'RansacConfig',
    'NeighborSearchConfig',
    'SolverConfig',
    'NearestNeighborIndex',
    'FeatureAffineEstimator',
    'FeatureAffineResult',
    'AffineEstimate',
    'compute_icgn',
    'apply_icgn_result',
    'ICGNResult',
]
