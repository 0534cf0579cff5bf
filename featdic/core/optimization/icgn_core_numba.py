"""
Numba IC-GN 코어 모듈

IC-GN (Inverse Compositional Gauss-Newton) 반복 루프의 Numba JIT 구현.
icgn.py의 NumPy 경로(solve_poi)와 같은 골격, 같은 종료 상태를 따르며
prange 병렬 루프 안에서 워커 슬롯마다 독립된 작업 버퍼로 실행된다.

    - ImageInterpolator 대신 coeffs 배열 + order 정수
    - shape_order 대신 shape_type 정수 (AFFINE=0, QUADRATIC=1)
    - 작업 버퍼는 prange 진입 전에 워커 슬롯별로 사전 할당 (POI 수와 무관)

함수 호출 구조:
    process_poi_numba
    ├── extract_reference_subset  (reference subset + 통계)
    ├── compute_steepest_descent  (Jacobian, 1회)
    ├── compute_hessian           (Hessian, 1회)
    ├── hessian_is_well_conditioned
    ├── np.linalg.inv(H)          (1회)
    └── icgn_iterate
        ├── warp
        ├── is_inside_batch
        ├── interp2d_into
        ├── compute_znssd
        ├── compute_b_vector      (b = J^T @ error)
        ├── matvec                (dp = H_inv @ b)
        ├── update_warp           (W(p) ← W(p) ∘ W(Δp)^-1)
        └── compute_dp_norm

References:
    - Pan, B., et al. Experimental Mechanics, 2013.
    - Jiang, Z., et al. Optics and Lasers in Engineering, 2015.
"""

import numpy as np
from numba import jit, prange

from .interpolation_numba import (
    prefilter_image,
    interp2d_into,
    is_inside_batch,
)
from .shape_function_numba import (
    AFFINE, QUADRATIC,
    generate_local_coordinates,
    warp,
    compute_steepest_descent,
    compute_hessian,
    compute_dp_norm,
    update_warp,
    allocate_warp_work,
    get_num_params,
)


# =============================================================================
#  상태 코드 상수 (results.py, models/poi.py와 동일 값)
# =============================================================================
# nopython 함수는 전역 상수를 컴파일 시점에 고정하므로 여기서 재정의

ICGN_CONVERGED = 0
ICGN_MAX_ITER_REACHED = 1
ICGN_OUT_OF_BOUNDS = 2
ICGN_SINGULAR_HESSIAN = 3
ICGN_INVALID_SUBSET = 4

ZNCC_FAILED = -2.0
HESSIAN_COND_LIMIT = 1e12
FLAT_SUBSET_TOL = 1e-10

_SUBSET_OK = 0


# =============================================================================
#  1. Reference Subset 추출
# =============================================================================

@jit(nopython=True, cache=True)
def extract_reference_subset(
    ref_image, grad_x, grad_y, cx, cy, radius_x, radius_y,
    f_out, dfdx_out, dfdy_out
):
    """
    Reference subset 추출 (행 우선)

    Returns:
        (f_mean, f_tilde, code)
        code: 0 정상, ICGN_OUT_OF_BOUNDS, ICGN_INVALID_SUBSET
    """
    h = ref_image.shape[0]
    w = ref_image.shape[1]

    if (cy - radius_y < 0 or cy + radius_y > h - 1
            or cx - radius_x < 0 or cx + radius_x > w - 1):
        return 0.0, 0.0, ICGN_OUT_OF_BOUNDS

    idx = 0
    for row in range(cy - radius_y, cy + radius_y + 1):
        for col in range(cx - radius_x, cx + radius_x + 1):
            f_out[idx] = ref_image[row, col]
            dfdx_out[idx] = grad_x[row, col]
            dfdy_out[idx] = grad_y[row, col]
            idx += 1

    n = idx
    f_sum = 0.0
    for i in range(n):
        f_sum += f_out[i]
    f_mean = f_sum / n

    tilde_sq = 0.0
    for i in range(n):
        diff = f_out[i] - f_mean
        tilde_sq += diff * diff
    f_tilde = np.sqrt(tilde_sq)

    if not (np.isfinite(f_mean) and np.isfinite(f_tilde)):
        return f_mean, f_tilde, ICGN_INVALID_SUBSET
    if f_tilde < FLAT_SUBSET_TOL:
        return f_mean, f_tilde, ICGN_INVALID_SUBSET

    return f_mean, f_tilde, _SUBSET_OK


# =============================================================================
#  2. ZNSSD
# =============================================================================

@jit(nopython=True, cache=True)
def compute_znssd(f, f_mean, f_tilde, g, g_mean, g_tilde, n):
    """
    Zero-mean Normalized Sum of Squared Differences

    0 = 완벽 매칭, 4 = 완전 반전
    """
    s = 0.0
    inv_ft = 1.0 / f_tilde
    inv_gt = 1.0 / g_tilde
    for i in range(n):
        diff = (f[i] - f_mean) * inv_ft - (g[i] - g_mean) * inv_gt
        s += diff * diff
    return s


# =============================================================================
#  3. b = J^T @ error
# =============================================================================

@jit(nopython=True, cache=True)
def compute_b_vector(f, f_mean, f_tilde, g, g_mean, g_tilde,
                     J, b_out, n_pixels, n_params):
    """
    error[i] = (f_tilde / g_tilde) * (g[i] - g_mean) - (f[i] - f_mean)
    b[j] = sum_i( J[i,j] * error[i] )
    """
    scale = f_tilde / g_tilde

    for j in range(n_params):
        b_out[j] = 0.0

    for i in range(n_pixels):
        err_i = scale * (g[i] - g_mean) - (f[i] - f_mean)
        for j in range(n_params):
            b_out[j] += J[i, j] * err_i


# =============================================================================
#  4. 선형대수 보조
# =============================================================================

@jit(nopython=True, cache=True)
def matvec(A, x, y, n):
    """y = A @ x (in-place)"""
    for i in range(n):
        s = 0.0
        for j in range(n):
            s += A[i, j] * x[j]
        y[i] = s


@jit(nopython=True, cache=True)
def hessian_is_well_conditioned(H):
    """대칭 Hessian의 조건수 < HESSIAN_COND_LIMIT 이고 모든 값이 유한한지"""
    n = H.shape[0]
    for i in range(n):
        for j in range(n):
            if not np.isfinite(H[i, j]):
                return False

    eig = np.linalg.eigvalsh(H)
    lo = eig[0]
    hi = eig[n - 1]
    if not (lo > 0.0):
        return False
    return hi / lo < HESSIAN_COND_LIMIT


# =============================================================================
#  5. IC-GN 반복 루프
# =============================================================================

@jit(nopython=True, cache=True)
def icgn_iterate(
    f, f_mean, f_tilde,
    J, H_inv,
    coeffs, order,
    img_h, img_w,
    cx, cy,
    xsi, eta,
    p,
    radius_x, radius_y,
    max_iteration,
    convergence_threshold,
    shape_type,
    n_pixels,
    n_params,
    # 작업 버퍼 (사전 할당)
    xsi_w, eta_w,
    x_def, y_def,
    g, b, dp, p_new,
    warp_work
):
    """
    단일 POI IC-GN 반복

    매 반복: warp → 경계 체크 → 보간 → error → Δp → p 합성 갱신 → ‖Δp‖ 판정.
    ZNCC는 마지막으로 샘플링한 target subset 기준.

    Returns:
        (zncc, n_iter, dp_norm, status), p는 in-place 갱신
    """
    n_iter = 0
    zncc = ZNCC_FAILED
    dp_norm = 0.0
    status = ICGN_MAX_ITER_REACHED

    for iteration in range(max_iteration):
        n_iter = iteration + 1

        # 1. Warp
        warp(p, xsi, eta, xsi_w, eta_w, shape_type)
        for i in range(n_pixels):
            x_def[i] = cx + xsi_w[i]
            y_def[i] = cy + eta_w[i]

        # 2. 경계 체크
        if not is_inside_batch(y_def, x_def, img_h, img_w):
            zncc = ZNCC_FAILED
            status = ICGN_OUT_OF_BOUNDS
            break

        # 3. 보간
        interp2d_into(coeffs, y_def, x_def, order, g)

        # 4. Target subset 통계
        g_sum = 0.0
        for i in range(n_pixels):
            g_sum += g[i]
        g_mean = g_sum / n_pixels

        g_tilde_sq = 0.0
        for i in range(n_pixels):
            diff = g[i] - g_mean
            g_tilde_sq += diff * diff
        g_tilde = np.sqrt(g_tilde_sq)

        if not (np.isfinite(g_mean) and np.isfinite(g_tilde)) \
                or g_tilde < FLAT_SUBSET_TOL:
            zncc = ZNCC_FAILED
            status = ICGN_INVALID_SUBSET
            break

        # 5. ZNCC (마지막 샘플 기준)
        znssd = compute_znssd(f, f_mean, f_tilde, g, g_mean, g_tilde, n_pixels)
        zncc = 1.0 - 0.5 * znssd

        # 6. dp = H_inv @ J^T @ error
        compute_b_vector(f, f_mean, f_tilde, g, g_mean, g_tilde,
                         J, b, n_pixels, n_params)
        matvec(H_inv, b, dp, n_params)

        # 7. Inverse compositional 갱신
        update_warp(p, dp, p_new, shape_type, warp_work)
        for k in range(n_params):
            p[k] = p_new[k]

        # 8. 수렴 판정
        dp_norm = compute_dp_norm(dp, radius_x, radius_y, shape_type)
        if dp_norm < convergence_threshold:
            status = ICGN_CONVERGED
            break

    return zncc, n_iter, dp_norm, status


# =============================================================================
#  6. 단일 POI 처리
# =============================================================================

@jit(nopython=True, cache=True)
def process_poi_numba(
    ref_image, grad_x, grad_y,
    coeffs, order,
    cx, cy,
    initial_p,
    xsi, eta,
    radius_x, radius_y,
    max_iteration,
    convergence_threshold,
    shape_type,
    # 작업 버퍼 (워커 슬롯별)
    f, dfdx, dfdy,
    J, H, H_inv_buf,
    p, xsi_w, eta_w,
    x_def, y_def,
    g, b, dp, p_new,
    warp_work
):
    """
    단일 POI 전체 IC-GN 처리

    Args:
        ref_image, grad_x, grad_y: 참조 이미지와 gradient (H, W)
        coeffs: target 이미지 B-spline 계수 (H, W)
        cx, cy: 서브셋 중심 (정수 픽셀)
        initial_p: 초기 파라미터 (n_params,)

    Returns:
        (zncc, n_iter, dp_norm, status), p는 최종 파라미터
    """
    n_pixels = len(xsi)
    n_params = get_num_params(shape_type)
    img_h = coeffs.shape[0]
    img_w = coeffs.shape[1]

    for k in range(n_params):
        p[k] = initial_p[k]

    # 1. Reference subset
    f_mean, f_tilde, code = extract_reference_subset(
        ref_image, grad_x, grad_y, cx, cy, radius_x, radius_y,
        f, dfdx, dfdy
    )
    if code != _SUBSET_OK:
        return ZNCC_FAILED, 0, 0.0, code

    # 2. Steepest Descent Image, Hessian
    compute_steepest_descent(dfdx, dfdy, xsi, eta, J, shape_type)
    compute_hessian(J, H)

    # 3. Hessian 조건수 (nopython에서 try/except 불가)
    if not hessian_is_well_conditioned(H):
        return ZNCC_FAILED, 0, 0.0, ICGN_SINGULAR_HESSIAN

    H_inv = np.linalg.inv(H)
    for i in range(n_params):
        for j in range(n_params):
            H_inv_buf[i, j] = H_inv[i, j]

    # 4. 반복
    return icgn_iterate(
        f, f_mean, f_tilde,
        J, H_inv_buf,
        coeffs, order,
        img_h, img_w,
        cx, cy,
        xsi, eta,
        p,
        radius_x, radius_y,
        max_iteration,
        convergence_threshold,
        shape_type,
        n_pixels,
        n_params,
        xsi_w, eta_w,
        x_def, y_def,
        g, b, dp, p_new,
        warp_work
    )


# =============================================================================
#  7. 버퍼 할당 (Python, prange 전에 1회)
# =============================================================================

def allocate_poi_buffers(n_pixels, n_params):
    """단일 POI 작업 버퍼"""
    return {
        'f': np.empty(n_pixels, dtype=np.float64),
        'dfdx': np.empty(n_pixels, dtype=np.float64),
        'dfdy': np.empty(n_pixels, dtype=np.float64),
        'J': np.empty((n_pixels, n_params), dtype=np.float64),
        'H': np.empty((n_params, n_params), dtype=np.float64),
        'H_inv': np.empty((n_params, n_params), dtype=np.float64),
        'p': np.empty(n_params, dtype=np.float64),
        'xsi_w': np.empty(n_pixels, dtype=np.float64),
        'eta_w': np.empty(n_pixels, dtype=np.float64),
        'x_def': np.empty(n_pixels, dtype=np.float64),
        'y_def': np.empty(n_pixels, dtype=np.float64),
        'g': np.empty(n_pixels, dtype=np.float64),
        'b': np.empty(n_params, dtype=np.float64),
        'dp': np.empty(n_params, dtype=np.float64),
        'p_new': np.empty(n_params, dtype=np.float64),
        'warp_work': allocate_warp_work(),
    }


def allocate_worker_buffers(n_slots, n_pixels, n_params):
    """
    워커 슬롯별 작업 버퍼 (n_slots, ...)

    슬롯 s는 POI s, s + n_slots, s + 2·n_slots, ... 를 차례로 처리하며
    s 행만 사용하므로 잠금 없이 안전하다. 메모리는 POI 수와 무관하다.
    """
    if n_slots < 1:
        raise ValueError(f"n_slots must be >= 1, got {n_slots}")
    return {
        'f': np.empty((n_slots, n_pixels), dtype=np.float64),
        'dfdx': np.empty((n_slots, n_pixels), dtype=np.float64),
        'dfdy': np.empty((n_slots, n_pixels), dtype=np.float64),
        'J': np.empty((n_slots, n_pixels, n_params), dtype=np.float64),
        'H': np.empty((n_slots, n_params, n_params), dtype=np.float64),
        'H_inv': np.empty((n_slots, n_params, n_params), dtype=np.float64),
        'p': np.empty((n_slots, n_params), dtype=np.float64),
        'xsi_w': np.empty((n_slots, n_pixels), dtype=np.float64),
        'eta_w': np.empty((n_slots, n_pixels), dtype=np.float64),
        'x_def': np.empty((n_slots, n_pixels), dtype=np.float64),
        'y_def': np.empty((n_slots, n_pixels), dtype=np.float64),
        'g': np.empty((n_slots, n_pixels), dtype=np.float64),
        'b': np.empty((n_slots, n_params), dtype=np.float64),
        'dp': np.empty((n_slots, n_params), dtype=np.float64),
        'p_new': np.empty((n_slots, n_params), dtype=np.float64),
        'warp_work': np.empty((n_slots, 3, 6, 6), dtype=np.float64),
    }


# =============================================================================
#  8. 배치 POI 처리 (prange 병렬)
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def process_all_pois_parallel(
    ref_image, grad_x, grad_y,
    coeffs, order,
    points_x, points_y,
    initial_p,
    xsi, eta,
    radius_x, radius_y,
    max_iteration,
    convergence_threshold,
    shape_type,
    # 결과 배열
    result_p,       # (n_poi, n_params)
    result_zncc,    # (n_poi,)
    result_iter,    # (n_poi,) int32
    result_conv,    # (n_poi,) float64, 마지막 ‖Δp‖
    result_status,  # (n_poi,) int32
    # 워커 슬롯 작업 버퍼 (n_slots, ...)
    buf_f, buf_dfdx, buf_dfdy,
    buf_J, buf_H, buf_H_inv,
    buf_p, buf_xsi_w, buf_eta_w,
    buf_x_def, buf_y_def,
    buf_g, buf_b, buf_dp, buf_p_new,
    buf_warp_work
):
    """
    워커 슬롯 단위로 prange 병렬 처리

    이미지, 계수, 로컬 좌표는 공유 읽기 전용.
    슬롯 s는 idx ≡ s (mod n_slots)인 POI를 처리하며 작업 버퍼의 s 행과
    결과 배열의 해당 idx 행에만 쓴다.
    """
    n_poi = len(points_x)
    n_slots = buf_p.shape[0]
    n_params = buf_p.shape[1]

    for slot in prange(n_slots):
        for idx in range(slot, n_poi, n_slots):
            zncc, n_iter, dp_norm, status = process_poi_numba(
                ref_image, grad_x, grad_y,
                coeffs, order,
                points_x[idx], points_y[idx],
                initial_p[idx],
                xsi, eta,
                radius_x, radius_y,
                max_iteration,
                convergence_threshold,
                shape_type,
                buf_f[slot], buf_dfdx[slot], buf_dfdy[slot],
                buf_J[slot], buf_H[slot], buf_H_inv[slot],
                buf_p[slot], buf_xsi_w[slot], buf_eta_w[slot],
                buf_x_def[slot], buf_y_def[slot],
                buf_g[slot], buf_b[slot], buf_dp[slot], buf_p_new[slot],
                buf_warp_work[slot]
            )

            result_zncc[idx] = zncc
            result_iter[idx] = n_iter
            result_conv[idx] = dp_norm
            result_status[idx] = status

            for k in range(n_params):
                result_p[idx, k] = buf_p[slot, k]


# =============================================================================
#  9. JIT 워밍업
# =============================================================================

def warmup_icgn_core():
    """
    Numba JIT 컴파일 워밍업

    작은 합성 이미지로 두 shape_type, 두 보간 차수, prange 배치 경로를
    한 번씩 실행한다.
    """
    img_size = 48
    yy, xx = np.mgrid[0:img_size, 0:img_size].astype(np.float64)
    ref = 100.0 + 40.0 * np.sin(xx / 3.1) * np.cos(yy / 4.3)

    grad_x = np.zeros_like(ref)
    grad_y = np.zeros_like(ref)
    grad_x[:, 1:-1] = (ref[:, 2:] - ref[:, :-2]) / 2.0
    grad_y[1:-1, :] = (ref[2:, :] - ref[:-2, :]) / 2.0

    radius_x, radius_y = 5, 4
    xsi, eta = generate_local_coordinates(radius_x, radius_y)
    n_pixels = len(xsi)
    center = img_size // 2

    for shape_type in (AFFINE, QUADRATIC):
        n_params = get_num_params(shape_type)
        init_p = np.zeros(n_params, dtype=np.float64)

        for order in (3, 5):
            coeffs = prefilter_image(ref, order=order)
            bufs = allocate_poi_buffers(n_pixels, n_params)
            process_poi_numba(
                ref, grad_x, grad_y,
                coeffs, order,
                center, center,
                init_p,
                xsi, eta,
                radius_x, radius_y,
                3, 0.001,
                shape_type,
                bufs['f'], bufs['dfdx'], bufs['dfdy'],
                bufs['J'], bufs['H'], bufs['H_inv'],
                bufs['p'], bufs['xsi_w'], bufs['eta_w'],
                bufs['x_def'], bufs['y_def'],
                bufs['g'], bufs['b'], bufs['dp'], bufs['p_new'],
                bufs['warp_work']
            )

        n_poi = 3
        coeffs = prefilter_image(ref, order=5)
        worker_bufs = allocate_worker_buffers(2, n_pixels, n_params)
        run_batch(
            ref, grad_x, grad_y, coeffs, 5,
            np.array([center, center + 3, center - 1], dtype=np.int64),
            np.array([center, center - 2, center + 2], dtype=np.int64),
            np.zeros((n_poi, n_params), dtype=np.float64),
            xsi, eta, radius_x, radius_y, 3, 0.001, shape_type,
            worker_bufs)


def run_batch(ref_image, grad_x, grad_y, coeffs, order,
              points_x, points_y, initial_p,
              xsi, eta, radius_x, radius_y,
              max_iteration, convergence_threshold, shape_type,
              worker_bufs):
    """
    결과 배열을 할당하고 process_all_pois_parallel 호출

    worker_bufs는 allocate_worker_buffers() 결과이며 슬롯 수가
    병렬도의 상한이 된다.

    Returns:
        (result_p, result_zncc, result_iter, result_conv, result_status)
    """
    n_poi = len(points_x)
    n_params = initial_p.shape[1]

    result_p = np.empty((n_poi, n_params), dtype=np.float64)
    result_zncc = np.empty(n_poi, dtype=np.float64)
    result_iter = np.empty(n_poi, dtype=np.int32)
    result_conv = np.empty(n_poi, dtype=np.float64)
    result_status = np.empty(n_poi, dtype=np.int32)

    process_all_pois_parallel(
        ref_image, grad_x, grad_y,
        coeffs, order,
        points_x, points_y,
        initial_p,
        xsi, eta,
        radius_x, radius_y,
        max_iteration, convergence_threshold,
        shape_type,
        result_p, result_zncc, result_iter, result_conv, result_status,
        worker_bufs['f'], worker_bufs['dfdx'], worker_bufs['dfdy'],
        worker_bufs['J'], worker_bufs['H'], worker_bufs['H_inv'],
        worker_bufs['p'], worker_bufs['xsi_w'], worker_bufs['eta_w'],
        worker_bufs['x_def'], worker_bufs['y_def'],
        worker_bufs['g'], worker_bufs['b'], worker_bufs['dp'],
        worker_bufs['p_new'], worker_bufs['warp_work']
    )

    return result_p, result_zncc, result_iter, result_conv, result_status
