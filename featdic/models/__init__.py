"""POI / 변형 데이터 모델"""

from .poi import (
    Point2D,
    KeypointPair,
    DeformationVector,
    ResultMetrics,
    POI2D,
    STATUS_NOT_RUN,
    ZNCC_FAILED,
    keypoint_pairs_to_arrays,
    make_poi_grid,
    param_fields,
)

__all__ = [
    'Point2D',
    'KeypointPair',
    'DeformationVector',
    'ResultMetrics',
    'POI2D',
    'STATUS_NOT_RUN',
    'ZNCC_FAILED',
    'keypoint_pairs_to_arrays',
    'make_poi_grid',
    'param_fields',
]
