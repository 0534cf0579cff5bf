"""특징점 기반 2D 디지털 이미지 상관법 (DIC) 패키지"""

from .models import (
    Point2D,
    KeypointPair,
    DeformationVector,
    ResultMetrics,
    POI2D,
    STATUS_NOT_RUN,
    ZNCC_FAILED,
    make_poi_grid,
)
from .core import (
    RansacConfig,
    NeighborSearchConfig,
    SolverConfig,
    NearestNeighborIndex,
    FeatureAffineEstimator,
    FeatureAffineResult,
    AffineEstimate,
    compute_icgn,
    apply_icgn_result,
    ICGNResult,
)
from .batch import ParallelDispatcher, BatchResult, as_image
from .utils import setup_logger

__version__ = "1.0.0"

__all__ = [
    # Models
    'Point2D',
    'KeypointPair',
    'DeformationVector',
    'ResultMetrics',
    'POI2D',
    'STATUS_NOT_RUN',
    'ZNCC_FAILED',
    'make_poi_grid',

    # Config
    'RansacConfig',
    'NeighborSearchConfig',
    'SolverConfig',

    # Core
    'NearestNeighborIndex',
    'FeatureAffineEstimator',
    'FeatureAffineResult',
    'AffineEstimate',
    'compute_icgn',
    'apply_icgn_result',
    'ICGNResult',

    # Batch
    'ParallelDispatcher',
    'BatchResult',
    'as_image',

    # Utils
    'setup_logger',
]
