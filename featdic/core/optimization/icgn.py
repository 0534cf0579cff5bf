"""
IC-GN (Inverse Compositional Gauss-Newton) 최적화 모듈

두 가지 실행 경로를 지원:
    1. thread: NumPy 단일 POI 풀이(solve_poi) + ThreadPoolExecutor
    2. numba:  JIT 컴파일 + prange 병렬화 (기본값)

두 경로는 같은 반복 골격과 종료 상태를 공유한다.
    INIT → ITERATING → {CONVERGED | MAX_ITER_REACHED | OUT_OF_BOUNDS |
                        SINGULAR_HESSIAN | INVALID_SUBSET}

References:
    - Pan, B., et al. Experimental Mechanics, 2013.
    - Jiang, Z., et al. Optics and Lasers in Engineering, 2015.
    - Jiang, Z. "OpenCorr." Optics and Lasers in Engineering, 2023.
"""

import numpy as np
import cv2
import numba
from typing import Tuple, Optional, Sequence, NamedTuple
from concurrent.futures import ThreadPoolExecutor
import time
import os
import logging

from ..config import SolverConfig
from ...models.poi import POI2D, ZNCC_FAILED
from .results import (
    ICGNResult,
    ICGN_CONVERGED,
    ICGN_MAX_ITER_REACHED,
    ICGN_OUT_OF_BOUNDS,
    ICGN_SINGULAR_HESSIAN,
    ICGN_INVALID_SUBSET,
)
from .interpolation import create_interpolator, ImageInterpolator
from .shape_function import (
    generate_local_coordinates,
    warp,
    update_warp_inverse_compositional,
    compute_steepest_descent,
    compute_hessian,
    compute_dp_norm,
)
from .icgn_core_numba import (
    run_batch,
    allocate_worker_buffers,
    prefilter_image,
    HESSIAN_COND_LIMIT,
    FLAT_SUBSET_TOL,
)
from .shape_function_numba import shape_type_of

_logger = logging.getLogger(__name__)

ENGINES = ('numba', 'thread')

# 4차 중앙 차분: (f[x-2] - 8f[x-1] + 8f[x+1] - f[x+2]) / 12
_GRADIENT_KERNEL = np.array([[1.0, -8.0, 0.0, 8.0, -1.0]]) / 12.0


class POIOutcome(NamedTuple):
    """단일 POI 풀이 결과"""
    params: np.ndarray
    zncc: float
    iteration: int
    convergence: float
    status: int


# ===== 전처리 =====

def _to_gray(img: np.ndarray) -> np.ndarray:
    """그레이스케일 변환"""
    if img is None:
        raise ValueError("이미지가 None입니다")
    if img.ndim == 3:
        if img.dtype == np.float64:
            img = img.astype(np.float32)
        code = cv2.COLOR_BGRA2GRAY if img.shape[2] == 4 else cv2.COLOR_BGR2GRAY
        return cv2.cvtColor(img, code)
    return img


def _blur(image: np.ndarray, gaussian_blur: Optional[int]) -> np.ndarray:
    if gaussian_blur is None or gaussian_blur <= 0:
        return image
    if gaussian_blur % 2 == 0:
        gaussian_blur += 1
    return cv2.GaussianBlur(image, (gaussian_blur, gaussian_blur), 0)


def compute_gradient(image: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    이미지 gradient (4차 중앙 차분)

    cv2.filter2D는 상관(correlation)이므로 커널을 뒤집지 않는다.
    """
    image = np.asarray(image, dtype=np.float64)
    grad_x = cv2.filter2D(image, cv2.CV_64F, _GRADIENT_KERNEL)
    grad_y = cv2.filter2D(image, cv2.CV_64F, _GRADIENT_KERNEL.T)
    return grad_x, grad_y


def prepare_ref_cache(
    ref_image: np.ndarray,
    config: SolverConfig,
) -> dict:
    """
    참조 이미지 전처리 결과 (이미지 쌍당 1회)

        - 그레이스케일 변환
        - Gaussian blur (선택)
        - 4차 중앙 차분 gradient
        - 로컬 좌표
    """
    ref_gray = _blur(_to_gray(ref_image).astype(np.float64),
                     config.gaussian_blur)
    grad_x, grad_y = compute_gradient(ref_gray)
    xsi, eta = generate_local_coordinates(config.subset_radius_x,
                                          config.subset_radius_y)
    return {
        'ref_gray': ref_gray,
        'grad_x': grad_x,
        'grad_y': grad_y,
        'xsi': xsi,
        'eta': eta,
    }


def prepare_target(tar_image: np.ndarray, config: SolverConfig) -> np.ndarray:
    """타겟 이미지 그레이스케일 + blur"""
    return _blur(_to_gray(tar_image).astype(np.float64), config.gaussian_blur)


# ===== 단일 POI (NumPy 경로) =====

def extract_reference_subset(
    ref_image: np.ndarray,
    grad_x: np.ndarray,
    grad_y: np.ndarray,
    cx: int, cy: int,
    radius_x: int, radius_y: int,
) -> Tuple[int, Optional[Tuple[np.ndarray, np.ndarray, np.ndarray, float, float]]]:
    """
    Reference subset 추출

    Returns:
        (status, data). 정상이면 status = ICGN_CONVERGED(0)와
        data = (f, dfdx, dfdy, f_mean, f_tilde), 아니면
        ICGN_OUT_OF_BOUNDS / ICGN_INVALID_SUBSET와 None
    """
    h, w = ref_image.shape

    if (cy - radius_y < 0 or cy + radius_y > h - 1
            or cx - radius_x < 0 or cx + radius_x > w - 1):
        return ICGN_OUT_OF_BOUNDS, None

    rows = slice(cy - radius_y, cy + radius_y + 1)
    cols = slice(cx - radius_x, cx + radius_x + 1)
    f = ref_image[rows, cols].ravel()
    dfdx = grad_x[rows, cols].ravel()
    dfdy = grad_y[rows, cols].ravel()

    f_mean = float(np.mean(f))
    f_tilde = float(np.linalg.norm(f - f_mean))

    if not (np.isfinite(f_mean) and np.isfinite(f_tilde)):
        return ICGN_INVALID_SUBSET, None
    if f_tilde < FLAT_SUBSET_TOL:
        return ICGN_INVALID_SUBSET, None

    return ICGN_CONVERGED, (f, dfdx, dfdy, f_mean, f_tilde)


def _hessian_is_well_conditioned(H: np.ndarray) -> bool:
    if not np.all(np.isfinite(H)):
        return False
    eig = np.linalg.eigvalsh(H)
    if not eig[0] > 0.0:
        return False
    return eig[-1] / eig[0] < HESSIAN_COND_LIMIT


def _compute_znssd(
    f: np.ndarray, f_mean: float, f_tilde: float,
    g: np.ndarray, g_mean: float, g_tilde: float
) -> float:
    """ZNSSD 계산"""
    diff = (f - f_mean) / f_tilde - (g - g_mean) / g_tilde
    return float(np.sum(diff ** 2))


def solve_poi(
    ref_gray: np.ndarray,
    grad_x: np.ndarray,
    grad_y: np.ndarray,
    target_interp: ImageInterpolator,
    cx: int, cy: int,
    initial_p: np.ndarray,
    xsi: np.ndarray,
    eta: np.ndarray,
    config: SolverConfig,
) -> POIOutcome:
    """
    단일 POI IC-GN 풀이

    Args:
        ref_gray, grad_x, grad_y: 참조 이미지와 gradient
        target_interp: 타겟 이미지 보간기
        cx, cy: 서브셋 중심 (정수 픽셀)
        initial_p: 초기 파라미터 (n_params,)
        xsi, eta: 로컬 좌표
        config: 풀이 설정
    """
    order = config.shape_order
    rx, ry = config.subset_radius_x, config.subset_radius_y
    p = np.array(initial_p, dtype=np.float64)

    status, ref_data = extract_reference_subset(
        ref_gray, grad_x, grad_y, cx, cy, rx, ry)
    if ref_data is None:
        return POIOutcome(p, ZNCC_FAILED, 0, 0.0, status)

    f, dfdx, dfdy, f_mean, f_tilde = ref_data

    J = compute_steepest_descent(dfdx, dfdy, xsi, eta, order)
    H = compute_hessian(J)
    if not _hessian_is_well_conditioned(H):
        return POIOutcome(p, ZNCC_FAILED, 0, 0.0, ICGN_SINGULAR_HESSIAN)
    H_inv = np.linalg.inv(H)

    n_iter = 0
    zncc = ZNCC_FAILED
    dp_norm = 0.0
    status = ICGN_MAX_ITER_REACHED

    for iteration in range(config.max_iteration):
        n_iter = iteration + 1

        # Warp
        xsi_w, eta_w = warp(p, xsi, eta, order)
        x_def = cx + xsi_w
        y_def = cy + eta_w

        # 경계 체크
        if not target_interp.all_inside(y_def, x_def):
            zncc = ZNCC_FAILED
            status = ICGN_OUT_OF_BOUNDS
            break

        # 보간
        g = target_interp(y_def, x_def)

        g_mean = float(np.mean(g))
        g_tilde = float(np.linalg.norm(g - g_mean))
        if (not (np.isfinite(g_mean) and np.isfinite(g_tilde))
                or g_tilde < FLAT_SUBSET_TOL):
            zncc = ZNCC_FAILED
            status = ICGN_INVALID_SUBSET
            break

        zncc = 1.0 - 0.5 * _compute_znssd(f, f_mean, f_tilde,
                                          g, g_mean, g_tilde)

        # 파라미터 증분
        error = (f_tilde / g_tilde) * (g - g_mean) - (f - f_mean)
        dp = H_inv @ (J.T @ error)

        # Warp 갱신
        p = update_warp_inverse_compositional(p, dp, order)

        dp_norm = compute_dp_norm(dp, rx, ry, order)
        if dp_norm < config.convergence_threshold:
            status = ICGN_CONVERGED
            break

    return POIOutcome(p, float(zncc), n_iter, float(dp_norm), status)


# ===== 메인 함수 =====

def poi_centers(pois: Sequence[POI2D]) -> Tuple[np.ndarray, np.ndarray]:
    """POI 위치를 가장 가까운 픽셀로 반올림한 서브셋 중심"""
    xs = np.array([p.x for p in pois], dtype=np.float64)
    ys = np.array([p.y for p in pois], dtype=np.float64)
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        raise ValueError("POI coordinates must be finite")
    return np.rint(xs).astype(np.int64), np.rint(ys).astype(np.int64)


def initial_params(pois: Sequence[POI2D], shape_order: int) -> np.ndarray:
    """POI 초기 변형 → (n_points, n_params) 배열"""
    n_params = 6 if shape_order == 1 else 12
    out = np.zeros((len(pois), n_params), dtype=np.float64)
    for i, poi in enumerate(pois):
        out[i] = poi.deformation.to_params(shape_order)
    return out


def compute_icgn(
    ref_image: np.ndarray,
    tar_image: np.ndarray,
    pois: Sequence[POI2D],
    config: Optional[SolverConfig] = None,
    engine: str = 'numba',
    n_workers: Optional[int] = None,
    ref_cache: Optional[dict] = None,
) -> ICGNResult:
    """
    IC-GN 서브픽셀 최적화

    POI의 현재 변형을 초기값으로 사용한다. POI 자체는 수정하지 않으며
    결과 기록은 apply_icgn_result()가 담당한다.

    Args:
        ref_image: 참조 이미지
        tar_image: 타겟 (변형) 이미지
        pois: POI 목록
        config: 풀이 설정
        engine: 'numba' (prange) 또는 'thread' (ThreadPoolExecutor)
        n_workers: 병렬 워커 수 (None이면 CPU 수 - 1)
        ref_cache: prepare_ref_cache() 결과 (None이면 내부 계산)

    Returns:
        ICGNResult 객체
    """
    config = config or SolverConfig()
    config.validate()
    if engine not in ENGINES:
        raise ValueError(f"engine must be one of {ENGINES}, got '{engine}'")

    n_points = len(pois)
    cached = "cached" if ref_cache else "fresh"
    _logger.info(f"IC-GN 시작: {n_points} POIs, "
                 f"subset={config.subset_width}x{config.subset_height}, "
                 f"order={config.interpolation_order}, "
                 f"shape={config.shape_function}, engine={engine}, ref={cached}")

    if ref_cache is None:
        ref_cache = prepare_ref_cache(ref_image, config)
    tar_gray = prepare_target(tar_image, config)

    if tar_gray.shape != ref_cache['ref_gray'].shape:
        raise ValueError(
            f"image shape mismatch: ref {ref_cache['ref_gray'].shape} "
            f"vs tar {tar_gray.shape}")

    if n_points == 0:
        return _empty_result(config, engine)

    if n_workers is None:
        n_workers = max(1, (os.cpu_count() or 2) - 1)

    if engine == 'numba':
        return _compute_icgn_numba(ref_cache, tar_gray, pois, config, n_workers)
    return _compute_icgn_thread(ref_cache, tar_gray, pois, config, n_workers)


# ===== Numba 경로 =====

def _compute_icgn_numba(ref_cache, tar_gray, pois, config, n_workers) -> ICGNResult:
    """Numba JIT + prange 병렬화 경로"""
    start_time = time.time()

    shape_type = shape_type_of(config.shape_order)
    n_points = len(pois)

    coeffs = prefilter_image(tar_gray, order=config.interpolation_order)
    pts_x, pts_y = poi_centers(pois)
    init_p = initial_params(pois, config.shape_order)

    # 작업 버퍼는 prange 진입 전에 워커 슬롯별로 할당 (POI 수와 무관)
    n_threads = min(n_workers, numba.config.NUMBA_NUM_THREADS)
    numba.set_num_threads(n_threads)
    worker_bufs = allocate_worker_buffers(max(1, min(n_threads, n_points)),
                                          config.n_pixels, config.n_params)

    result_p, result_zncc, result_iter, result_conv, result_status = run_batch(
        ref_cache['ref_gray'], ref_cache['grad_x'], ref_cache['grad_y'],
        coeffs, config.interpolation_order,
        pts_x, pts_y,
        init_p,
        ref_cache['xsi'], ref_cache['eta'],
        config.subset_radius_x, config.subset_radius_y,
        config.max_iteration, config.convergence_threshold,
        shape_type,
        worker_bufs)

    return _finish(pois, result_p, result_zncc, result_iter, result_conv,
                   result_status, config, 'numba', time.time() - start_time)


# ===== ThreadPoolExecutor 경로 =====

def _compute_icgn_thread(ref_cache, tar_gray, pois, config, n_workers) -> ICGNResult:
    """NumPy solve_poi + ThreadPoolExecutor 경로"""
    start_time = time.time()

    n_points = len(pois)
    target_interp = create_interpolator(tar_gray, order=config.interpolation_order)
    pts_x, pts_y = poi_centers(pois)
    init_p = initial_params(pois, config.shape_order)

    ref_gray = ref_cache['ref_gray']
    grad_x = ref_cache['grad_x']
    grad_y = ref_cache['grad_y']
    xsi = ref_cache['xsi']
    eta = ref_cache['eta']

    def process_poi(idx: int) -> POIOutcome:
        return solve_poi(ref_gray, grad_x, grad_y, target_interp,
                         int(pts_x[idx]), int(pts_y[idx]), init_p[idx],
                         xsi, eta, config)

    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        outcomes = list(executor.map(process_poi, range(n_points)))

    result_p = np.array([o.params for o in outcomes], dtype=np.float64)
    result_zncc = np.array([o.zncc for o in outcomes], dtype=np.float64)
    result_iter = np.array([o.iteration for o in outcomes], dtype=np.int32)
    result_conv = np.array([o.convergence for o in outcomes], dtype=np.float64)
    result_status = np.array([o.status for o in outcomes], dtype=np.int32)

    return _finish(pois, result_p, result_zncc, result_iter, result_conv,
                   result_status, config, 'thread', time.time() - start_time)


# ===== 결과 =====

def _finish(pois, result_p, result_zncc, result_iter, result_conv,
            result_status, config, engine, processing_time) -> ICGNResult:
    n_points = len(pois)
    result = ICGNResult.from_params(
        [p.x for p in pois], [p.y for p in pois],
        result_p, result_zncc, result_iter, result_conv, result_status,
        config.shape_order,
        subset_radius_x=config.subset_radius_x,
        subset_radius_y=config.subset_radius_y,
        max_iteration=config.max_iteration,
        convergence_threshold=config.convergence_threshold,
        processing_time=processing_time,
        engine=engine,
    )

    n_conv = result.n_converged
    _logger.info(f"IC-GN({engine}) 완료: {n_conv}/{n_points} 수렴 "
                 f"({n_conv/n_points*100:.1f}%), "
                 f"mean_zncc={result.mean_zncc:.4f}, {processing_time:.3f}s "
                 f"({processing_time/n_points*1000:.2f}ms/POI)")
    failed = {k: v for k, v in result.status_summary.items()
              if k not in ('converged', 'max_iter_reached')}
    if failed:
        _logger.debug(f"IC-GN 실패 POI: {failed}")

    return result


def apply_icgn_result(pois: Sequence[POI2D], result: ICGNResult) -> None:
    """
    IC-GN 결과를 POI에 in-place 기록

    1차 풀이는 2차 변형 필드를 건드리지 않는다.
    """
    for idx, poi in enumerate(pois):
        poi.deformation.set_params(result.params_of(idx), result.shape_order)
        poi.result.zncc = float(result.zncc_values[idx])
        poi.result.iteration = int(result.iterations[idx])
        poi.result.convergence = float(result.convergence[idx])
        poi.result.icgn_status = int(result.status[idx])


def _empty_result(config: SolverConfig, engine: str) -> ICGNResult:
    """빈 결과"""
    return ICGNResult.from_params(
        np.array([], dtype=np.float64), np.array([], dtype=np.float64),
        np.empty((0, config.n_params), dtype=np.float64),
        np.array([], dtype=np.float64),
        np.array([], dtype=np.int32),
        np.array([], dtype=np.float64),
        np.array([], dtype=np.int32),
        config.shape_order,
        subset_radius_x=config.subset_radius_x,
        subset_radius_y=config.subset_radius_y,
        max_iteration=config.max_iteration,
        convergence_threshold=config.convergence_threshold,
        processing_time=0.0,
        engine=engine,
    )
