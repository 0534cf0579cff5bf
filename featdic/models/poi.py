"""
POI / 변형 벡터 데이터 모델

POI2D는 호출자가 위치만 지정해 생성하고, 초기 추정 단계와 IC-GN 단계가
각자의 결과 필드를 in-place로 채운다.

파라미터 벡터 배치 (IC-GN 내부 순서):
    1차 (affine):    [u, ux, uy, v, vx, vy]
    2차 (quadratic): [u, ux, uy, uxx, uxy, uyy, v, vx, vy, vxx, vxy, vyy]
"""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Sequence, Tuple, Union
import numpy as np


# 아직 해당 단계가 실행되지 않음
STATUS_NOT_RUN = -1

# 실패 POI의 ZNCC (유효 범위 [-1, 1] 밖)
ZNCC_FAILED = -2.0

AFFINE_FIELDS = ('u', 'ux', 'uy', 'v', 'vx', 'vy')
QUADRATIC_FIELDS = ('u', 'ux', 'uy', 'uxx', 'uxy', 'uyy',
                    'v', 'vx', 'vy', 'vxx', 'vxy', 'vyy')


def param_fields(shape_order: int) -> Tuple[str, ...]:
    """형상 함수 차수별 파라미터 필드 이름"""
    if shape_order == 1:
        return AFFINE_FIELDS
    elif shape_order == 2:
        return QUADRATIC_FIELDS
    else:
        raise ValueError(f"shape_order must be 1 or 2, got {shape_order}")


@dataclass(frozen=True)
class Point2D:
    """픽셀 좌표 (x, y)"""
    x: float
    y: float


@dataclass(frozen=True)
class KeypointPair:
    """외부 특징점 매칭기가 넘겨준 (ref, tar) 대응쌍"""
    ref: Point2D
    tar: Point2D


def keypoint_pairs_to_arrays(
    pairs: Sequence[KeypointPair]
) -> Tuple[np.ndarray, np.ndarray]:
    """KeypointPair 시퀀스 → (ref (N, 2), tar (N, 2)) float64 배열"""
    ref = np.array([[p.ref.x, p.ref.y] for p in pairs], dtype=np.float64)
    tar = np.array([[p.tar.x, p.tar.y] for p in pairs], dtype=np.float64)
    return ref.reshape(-1, 2), tar.reshape(-1, 2)


@dataclass
class DeformationVector:
    """변위 + 1차/2차 변위 gradient"""
    u: float = 0.0
    ux: float = 0.0
    uy: float = 0.0
    uxx: float = 0.0
    uxy: float = 0.0
    uyy: float = 0.0
    v: float = 0.0
    vx: float = 0.0
    vy: float = 0.0
    vxx: float = 0.0
    vxy: float = 0.0
    vyy: float = 0.0

    def to_params(self, shape_order: int = 1) -> np.ndarray:
        """IC-GN 파라미터 벡터로 변환"""
        return np.array([getattr(self, name) for name in param_fields(shape_order)],
                        dtype=np.float64)

    def set_params(self, params: Union[np.ndarray, Sequence[float]],
                   shape_order: int = 1) -> None:
        """
        파라미터 벡터를 필드에 기록

        1차 파라미터 기록은 2차 항을 건드리지 않는다.
        """
        names = param_fields(shape_order)
        if len(params) != len(names):
            raise ValueError(
                f"expected {len(names)} parameters for shape_order={shape_order}, "
                f"got {len(params)}")
        for name, value in zip(names, params):
            setattr(self, name, float(value))

    def reset(self) -> None:
        for name in QUADRATIC_FIELDS:
            setattr(self, name, 0.0)

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in QUADRATIC_FIELDS}


@dataclass
class ResultMetrics:
    """POI별 품질 지표"""
    zncc: float = 0.0
    iteration: int = 0
    convergence: float = 0.0
    feature: int = 0
    u0: float = 0.0
    v0: float = 0.0
    feature_status: int = STATUS_NOT_RUN
    icgn_status: int = STATUS_NOT_RUN


@dataclass
class POI2D:
    """
    관심점 (Point Of Interest)

    Usage:
        poi = POI2D(120.0, 85.0)
        dispatcher.run(ref, tar, [poi], ref_kp, tar_kp)
        print(poi.deformation.u, poi.result.zncc)
    """
    x: float
    y: float
    deformation: DeformationVector = field(default_factory=DeformationVector)
    result: ResultMetrics = field(default_factory=ResultMetrics)

    @property
    def center(self) -> Tuple[int, int]:
        """서브셋 중심 픽셀 (x, y), 가장 가까운 정수 좌표"""
        return int(np.rint(self.x)), int(np.rint(self.y))

    @property
    def low_confidence(self) -> bool:
        """초기 추정에서 RANSAC 합의가 만들어지지 않았는지"""
        return self.result.feature_status not in (STATUS_NOT_RUN, 0)

    def to_record(self) -> Dict[str, Any]:
        """외부 exporter용 평탄화 레코드"""
        # 순환 import 방지
        from ..core.initial_guess.results import FEATURE_STATUS_NAMES
        from ..core.optimization.results import ICGN_STATUS_NAMES

        record: Dict[str, Any] = {'x': self.x, 'y': self.y}
        record.update(self.deformation.as_dict())
        record.update({
            'u0': self.result.u0,
            'v0': self.result.v0,
            'zncc': self.result.zncc,
            'iteration': self.result.iteration,
            'convergence': self.result.convergence,
            'feature': self.result.feature,
            'feature_status': FEATURE_STATUS_NAMES.get(
                self.result.feature_status, 'not_run'),
            'icgn_status': ICGN_STATUS_NAMES.get(
                self.result.icgn_status, 'not_run'),
        })
        return record


def make_poi_grid(x_start: float, y_start: float,
                  n_x: int, n_y: int, spacing: float = 1.0) -> List[POI2D]:
    """좌상단 점에서 시작하는 규칙 격자 POI 큐 생성 (행 우선)"""
    return [POI2D(x_start + j * spacing, y_start + i * spacing)
            for i in range(n_y) for j in range(n_x)]
