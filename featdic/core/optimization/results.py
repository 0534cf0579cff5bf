"""
IC-GN 최적화 결과 데이터 클래스
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional, Dict


# 종료 상태 코드 상수 (icgn_core_numba.py와 동일 값)
ICGN_CONVERGED = 0
ICGN_MAX_ITER_REACHED = 1
ICGN_OUT_OF_BOUNDS = 2
ICGN_SINGULAR_HESSIAN = 3
ICGN_INVALID_SUBSET = 4

ICGN_STATUS_NAMES = {
    ICGN_CONVERGED: 'converged',
    ICGN_MAX_ITER_REACHED: 'max_iter_reached',
    ICGN_OUT_OF_BOUNDS: 'out_of_bounds',
    ICGN_SINGULAR_HESSIAN: 'singular_hessian',
    ICGN_INVALID_SUBSET: 'invalid_subset',
}

# 파라미터를 보고할 수 있는 상태 (MAX_ITER_REACHED는 실패가 아님)
ICGN_REPORTABLE = (ICGN_CONVERGED, ICGN_MAX_ITER_REACHED)


@dataclass
class ICGNResult:
    """IC-GN 최적화 결과"""

    # POI 좌표
    points_x: np.ndarray
    points_y: np.ndarray

    # 서브픽셀 변위
    disp_u: np.ndarray
    disp_v: np.ndarray

    # 변형 gradient (1차)
    disp_ux: np.ndarray
    disp_uy: np.ndarray
    disp_vx: np.ndarray
    disp_vy: np.ndarray

    # 2차 변형 gradient (Quadratic)
    disp_uxx: Optional[np.ndarray] = None
    disp_uxy: Optional[np.ndarray] = None
    disp_uyy: Optional[np.ndarray] = None
    disp_vxx: Optional[np.ndarray] = None
    disp_vxy: Optional[np.ndarray] = None
    disp_vyy: Optional[np.ndarray] = None

    # 품질 지표
    zncc_values: np.ndarray = None
    iterations: np.ndarray = None
    convergence: np.ndarray = None
    status: np.ndarray = None

    # 메타데이터
    subset_radius_x: int = 16
    subset_radius_y: int = 16
    max_iteration: int = 10
    convergence_threshold: float = 0.001
    processing_time: float = 0.0
    shape_order: int = 1
    engine: str = 'numba'

    @classmethod
    def from_params(cls, points_x, points_y, params: np.ndarray,
                    zncc: np.ndarray, iterations: np.ndarray,
                    convergence: np.ndarray, status: np.ndarray,
                    shape_order: int, **meta) -> 'ICGNResult':
        """(n_points, n_params) 파라미터 배열 분해"""
        if shape_order == 1:
            second = dict(disp_uxx=None, disp_uxy=None, disp_uyy=None,
                          disp_vxx=None, disp_vxy=None, disp_vyy=None)
            u_idx, v_idx = 0, 3
        else:
            second = dict(disp_uxx=params[:, 3], disp_uxy=params[:, 4],
                          disp_uyy=params[:, 5], disp_vxx=params[:, 9],
                          disp_vxy=params[:, 10], disp_vyy=params[:, 11])
            u_idx, v_idx = 0, 6

        return cls(
            points_x=np.asarray(points_x, dtype=np.float64),
            points_y=np.asarray(points_y, dtype=np.float64),
            disp_u=params[:, u_idx],
            disp_ux=params[:, u_idx + 1],
            disp_uy=params[:, u_idx + 2],
            disp_v=params[:, v_idx],
            disp_vx=params[:, v_idx + 1],
            disp_vy=params[:, v_idx + 2],
            zncc_values=zncc,
            iterations=iterations,
            convergence=convergence,
            status=status,
            shape_order=shape_order,
            **second,
            **meta,
        )

    @property
    def n_points(self) -> int:
        return len(self.points_x)

    @property
    def converged(self) -> np.ndarray:
        return self.status == ICGN_CONVERGED

    @property
    def n_converged(self) -> int:
        return int(np.sum(self.converged))

    @property
    def valid_mask(self) -> np.ndarray:
        """파라미터를 보고할 수 있는 POI (수렴 또는 반복 한도 도달)"""
        return np.isin(self.status, ICGN_REPORTABLE)

    @property
    def n_valid(self) -> int:
        return int(np.sum(self.valid_mask))

    @property
    def convergence_rate(self) -> float:
        if self.n_points == 0:
            return 0.0
        return self.n_converged / self.n_points

    @property
    def mean_iterations(self) -> float:
        if self.n_converged == 0:
            return 0.0
        return float(np.mean(self.iterations[self.converged]))

    @property
    def mean_zncc(self) -> float:
        if self.n_valid == 0:
            return 0.0
        return float(np.mean(self.zncc_values[self.valid_mask]))

    @property
    def is_quadratic(self) -> bool:
        return self.shape_order == 2

    @property
    def status_summary(self) -> Dict[str, int]:
        """종료 상태별 POI 수 요약"""
        if self.status is None:
            return {}
        summary = {}
        for code, name in ICGN_STATUS_NAMES.items():
            count = int(np.sum(self.status == code))
            if count > 0:
                summary[name] = count
        return summary

    def params_of(self, idx: int) -> np.ndarray:
        """POI idx의 파라미터 벡터 (IC-GN 순서)"""
        if self.shape_order == 1:
            names = ('disp_u', 'disp_ux', 'disp_uy', 'disp_v', 'disp_vx', 'disp_vy')
        else:
            names = ('disp_u', 'disp_ux', 'disp_uy', 'disp_uxx', 'disp_uxy',
                     'disp_uyy', 'disp_v', 'disp_vx', 'disp_vy', 'disp_vxx',
                     'disp_vxy', 'disp_vyy')
        return np.array([getattr(self, n)[idx] for n in names], dtype=np.float64)
