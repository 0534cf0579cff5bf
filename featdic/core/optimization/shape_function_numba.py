"""
Numba Shape Function 모듈

Affine (1차) 및 Quadratic (2차) 변형 함수의 Numba JIT 구현.
shape_function.py와 수치적으로 동일한 결과를 생성하면서,
IC-GN prange 커널에서 nopython 모드로 직접 호출 가능.

    - shape_type 정수 (AFFINE=0, QUADRATIC=1) = shape_order - 1
    - 출력은 모두 사전 할당 배열에 in-place 기록
    - try/except 대신 det 체크

References:
    - Pan, B., et al. Experimental Mechanics, 2013.
    - Jiang, Z., et al. Optics and Lasers in Engineering, 2015.
"""

import numpy as np
from numba import jit

from .shape_function import SINGULAR_WARP_TOL


# =============================================================================
#  상수 정의
# =============================================================================

AFFINE = 0
QUADRATIC = 1
NUM_PARAMS_AFFINE = 6
NUM_PARAMS_QUADRATIC = 12


def shape_type_of(shape_order: int) -> int:
    """shape_order (1, 2) → Numba shape_type (AFFINE, QUADRATIC)"""
    if shape_order == 1:
        return AFFINE
    if shape_order == 2:
        return QUADRATIC
    raise ValueError(f"shape_order must be 1 or 2, got {shape_order}")


# =============================================================================
#  1. 로컬 좌표 생성 (Python, 초기화 시 1회)
# =============================================================================

def generate_local_coordinates(radius_x, radius_y):
    """
    로컬 좌표 (ξ, η) 생성

    Returns:
        (xsi, eta): 1D 배열, 길이 = (2·ry+1)·(2·rx+1), 행 우선
    """
    xs = np.arange(-radius_x, radius_x + 1, dtype=np.float64)
    ys = np.arange(-radius_y, radius_y + 1, dtype=np.float64)
    eta_2d, xsi_2d = np.meshgrid(ys, xs, indexing='ij')
    return xsi_2d.ravel().copy(), eta_2d.ravel().copy()


# =============================================================================
#  2. Warp 함수
# =============================================================================

@jit(nopython=True, cache=True)
def warp_affine(p, xsi, eta, xsi_w, eta_w):
    """
    Affine warp (in-place)

    p = [u, ux, uy, v, vx, vy]
    """
    u = p[0]; ux = p[1]; uy = p[2]
    v = p[3]; vx = p[4]; vy = p[5]

    n = len(xsi)
    for i in range(n):
        xsi_w[i] = (1.0 + ux) * xsi[i] + uy * eta[i] + u
        eta_w[i] = vx * xsi[i] + (1.0 + vy) * eta[i] + v


@jit(nopython=True, cache=True)
def warp_quadratic(p, xsi, eta, xsi_w, eta_w):
    """
    Quadratic warp (in-place)

    p = [u, ux, uy, uxx, uxy, uyy, v, vx, vy, vxx, vxy, vyy]
    """
    u = p[0]; ux = p[1]; uy = p[2]
    uxx = p[3]; uxy = p[4]; uyy = p[5]
    v = p[6]; vx = p[7]; vy = p[8]
    vxx = p[9]; vxy = p[10]; vyy = p[11]

    n = len(xsi)
    for i in range(n):
        xi = xsi[i]
        et = eta[i]
        xi2 = xi * xi
        et2 = et * et
        xi_et = xi * et

        xsi_w[i] = (u + (1.0 + ux) * xi + uy * et
                    + 0.5 * uxx * xi2 + uxy * xi_et + 0.5 * uyy * et2)
        eta_w[i] = (v + vx * xi + (1.0 + vy) * et
                    + 0.5 * vxx * xi2 + vxy * xi_et + 0.5 * vyy * et2)


@jit(nopython=True, cache=True)
def warp(p, xsi, eta, xsi_w, eta_w, shape_type):
    """통합 warp 함수"""
    if shape_type == AFFINE:
        warp_affine(p, xsi, eta, xsi_w, eta_w)
    else:
        warp_quadratic(p, xsi, eta, xsi_w, eta_w)


# =============================================================================
#  3. Steepest Descent Image
# =============================================================================

@jit(nopython=True, cache=True)
def compute_steepest_descent_affine(dfdx, dfdy, xsi, eta, J):
    """
    Steepest Descent Image (Affine)

    J[i, :] = [dfdx, dfdx*ξ, dfdx*η, dfdy, dfdy*ξ, dfdy*η]
    """
    n = len(dfdx)
    for i in range(n):
        dx = dfdx[i]
        dy = dfdy[i]
        xi = xsi[i]
        et = eta[i]
        J[i, 0] = dx
        J[i, 1] = dx * xi
        J[i, 2] = dx * et
        J[i, 3] = dy
        J[i, 4] = dy * xi
        J[i, 5] = dy * et


@jit(nopython=True, cache=True)
def compute_steepest_descent_quadratic(dfdx, dfdy, xsi, eta, J):
    """Steepest Descent Image (Quadratic), J: (n_pixels, 12)"""
    n = len(dfdx)
    for i in range(n):
        dx = dfdx[i]
        dy = dfdy[i]
        xi = xsi[i]
        et = eta[i]
        xi2 = xi * xi
        et2 = et * et
        xi_et = xi * et

        J[i, 0] = dx
        J[i, 1] = dx * xi
        J[i, 2] = dx * et
        J[i, 3] = 0.5 * dx * xi2
        J[i, 4] = dx * xi_et
        J[i, 5] = 0.5 * dx * et2

        J[i, 6] = dy
        J[i, 7] = dy * xi
        J[i, 8] = dy * et
        J[i, 9] = 0.5 * dy * xi2
        J[i, 10] = dy * xi_et
        J[i, 11] = 0.5 * dy * et2


@jit(nopython=True, cache=True)
def compute_steepest_descent(dfdx, dfdy, xsi, eta, J, shape_type):
    """통합 Steepest Descent"""
    if shape_type == AFFINE:
        compute_steepest_descent_affine(dfdx, dfdy, xsi, eta, J)
    else:
        compute_steepest_descent_quadratic(dfdx, dfdy, xsi, eta, J)


# =============================================================================
#  4. Hessian 계산
# =============================================================================

@jit(nopython=True, cache=True)
def compute_hessian(J, H):
    """Hessian matrix: H = J^T @ J (in-place, 대칭)"""
    n_pixels = J.shape[0]
    n_params = J.shape[1]

    for i in range(n_params):
        for j in range(i, n_params):
            s = 0.0
            for k in range(n_pixels):
                s += J[k, i] * J[k, j]
            H[i, j] = s
            H[j, i] = s


# =============================================================================
#  5. 증분 노름
# =============================================================================

@jit(nopython=True, cache=True)
def compute_dp_norm(dp, radius_x, radius_y, shape_type):
    """
    서브셋 크기 가중 증분 노름

    1차항은 rx 또는 ry, 2차항은 rx²/2, rx·ry, ry²/2로 가중.
    """
    rx = float(radius_x)
    ry = float(radius_y)

    if shape_type == AFFINE:
        norm_sq = (dp[0] * dp[0]
                   + (dp[1] * rx) ** 2
                   + (dp[2] * ry) ** 2
                   + dp[3] * dp[3]
                   + (dp[4] * rx) ** 2
                   + (dp[5] * ry) ** 2)
    else:
        norm_sq = (dp[0] * dp[0]
                   + (dp[1] * rx) ** 2
                   + (dp[2] * ry) ** 2
                   + (0.5 * dp[3] * rx * rx) ** 2
                   + (dp[4] * rx * ry) ** 2
                   + (0.5 * dp[5] * ry * ry) ** 2
                   + dp[6] * dp[6]
                   + (dp[7] * rx) ** 2
                   + (dp[8] * ry) ** 2
                   + (0.5 * dp[9] * rx * rx) ** 2
                   + (dp[10] * rx * ry) ** 2
                   + (0.5 * dp[11] * ry * ry) ** 2)
    return np.sqrt(norm_sq)


# =============================================================================
#  6. Inverse Compositional Warp Update
# =============================================================================

@jit(nopython=True, cache=True)
def update_warp_affine(p, dp, p_new):
    """
    Affine Warp Update: W(p) ← W(p) · W(Δp)^(-1)

    W(Δp)^(-1)의 닫힌 형태 사용.

    Returns:
        0 if success, -1 if W(Δp) singular (p_new = p)
    """
    u = p[0]; ux = p[1]; uy = p[2]
    v = p[3]; vx = p[4]; vy = p[5]

    du = dp[0]; dux = dp[1]; duy = dp[2]
    dv = dp[3]; dvx = dp[4]; dvy = dp[5]

    det = (1.0 + dux) * (1.0 + dvy) - duy * dvx

    if abs(det) < SINGULAR_WARP_TOL:
        for i in range(6):
            p_new[i] = p[i]
        return -1

    inv_det = 1.0 / det

    a = (1.0 + dvy) * inv_det
    b = -duy * inv_det
    c = (duy * dv - du * (1.0 + dvy)) * inv_det
    d = -dvx * inv_det
    e = (1.0 + dux) * inv_det
    f = (dvx * du - dv * (1.0 + dux)) * inv_det

    new_00 = (1.0 + ux) * a + uy * d
    new_01 = (1.0 + ux) * b + uy * e
    new_02 = (1.0 + ux) * c + uy * f + u

    new_10 = vx * a + (1.0 + vy) * d
    new_11 = vx * b + (1.0 + vy) * e
    new_12 = vx * c + (1.0 + vy) * f + v

    p_new[0] = new_02
    p_new[1] = new_00 - 1.0
    p_new[2] = new_01
    p_new[3] = new_12
    p_new[4] = new_10
    p_new[5] = new_11 - 1.0
    return 0


@jit(nopython=True, cache=True)
def _fill_quadratic_matrix(q, W):
    """파라미터 q(12)로 6×6 확장 warp 행렬 W를 in-place 구성"""
    u = q[0]; ux = q[1]; uy = q[2]; uxx = q[3]; uxy = q[4]; uyy = q[5]
    v = q[6]; vx = q[7]; vy = q[8]; vxx = q[9]; vxy = q[10]; vyy = q[11]

    W[0, 0] = 1.0 + 2.0*ux + ux*ux + u*uxx
    W[0, 1] = 2.0*u*uxy + 2.0*(1.0+ux)*uy
    W[0, 2] = uy*uy + u*uyy
    W[0, 3] = 2.0*u*(1.0+ux)
    W[0, 4] = 2.0*u*uy
    W[0, 5] = u*u

    W[1, 0] = 0.5*(v*uxx + 2.0*(1.0+ux)*vx + u*vxx)
    W[1, 1] = 1.0 + uy*vx + ux*vy + v*uxy + u*vxy + vy + ux
    W[1, 2] = 0.5*(v*uyy + 2.0*(1.0+vy)*uy + u*vyy)
    W[1, 3] = v + v*ux + u*vx
    W[1, 4] = u + v*uy + u*vy
    W[1, 5] = u*v

    W[2, 0] = vx*vx + v*vxx
    W[2, 1] = 2.0*v*vxy + 2.0*vx*(1.0+vy)
    W[2, 2] = 1.0 + 2.0*vy + vy*vy + v*vyy
    W[2, 3] = 2.0*v*vx
    W[2, 4] = 2.0*v*(1.0+vy)
    W[2, 5] = v*v

    W[3, 0] = 0.5 * uxx; W[3, 1] = uxy; W[3, 2] = 0.5 * uyy
    W[3, 3] = 1.0 + ux;  W[3, 4] = uy;  W[3, 5] = u
    W[4, 0] = 0.5 * vxx; W[4, 1] = vxy; W[4, 2] = 0.5 * vyy
    W[4, 3] = vx;        W[4, 4] = 1.0 + vy; W[4, 5] = v

    for j in range(5):
        W[5, j] = 0.0
    W[5, 5] = 1.0


@jit(nopython=True, cache=True)
def _solve_transposed(W, M, X):
    """
    Wᵀ·Y = X 를 부분 피벗 가우스 소거로 풀어 X(6×2)에 Y를 덮어쓴다.

    M은 소거용 6×6 작업 행렬. |det W|를 반환하며, 0이면 X는 미정.
    """
    n = 6
    for i in range(n):
        for j in range(n):
            M[i, j] = W[j, i]

    det = 1.0
    for k in range(n):
        piv = k
        big = abs(M[k, k])
        for i in range(k + 1, n):
            if abs(M[i, k]) > big:
                big = abs(M[i, k])
                piv = i
        if big == 0.0:
            return 0.0

        if piv != k:
            for j in range(n):
                tmp = M[k, j]; M[k, j] = M[piv, j]; M[piv, j] = tmp
            for j in range(2):
                tmp = X[k, j]; X[k, j] = X[piv, j]; X[piv, j] = tmp
        det *= M[k, k]

        for i in range(k + 1, n):
            factor = M[i, k] / M[k, k]
            for j in range(k, n):
                M[i, j] -= factor * M[k, j]
            for j in range(2):
                X[i, j] -= factor * X[k, j]

    for k in range(n - 1, -1, -1):
        for j in range(2):
            s = X[k, j]
            for i in range(k + 1, n):
                s -= M[k, i] * X[i, j]
            X[k, j] = s / M[k, k]

    return abs(det)


def allocate_warp_work():
    """update_warp 작업 버퍼 (3, 6, 6)"""
    return np.empty((3, 6, 6), dtype=np.float64)


@jit(nopython=True, cache=True)
def update_warp_quadratic(p, dp, p_new, work):
    """
    Quadratic Warp Update: W(p) ← W(p) · W(Δp)^(-1)

    W(p)의 행 3, 4만 필요하므로 역행렬 대신 R · W(Δp) = W(p)[3:5]를 푼다.
    work: allocate_warp_work() 버퍼, 호출 중 할당 없음.

    Returns:
        0 if success, -1 if W(Δp) singular (p_new = p)
    """
    W_dp = work[0]
    M = work[1]
    X = work[2]

    _fill_quadratic_matrix(dp, W_dp)

    # 우변: W(p)의 행 3, 4 (열 벡터로)
    X[0, 0] = 0.5 * p[3];  X[0, 1] = 0.5 * p[9]
    X[1, 0] = p[4];        X[1, 1] = p[10]
    X[2, 0] = 0.5 * p[5];  X[2, 1] = 0.5 * p[11]
    X[3, 0] = 1.0 + p[1];  X[3, 1] = p[7]
    X[4, 0] = p[2];        X[4, 1] = 1.0 + p[8]
    X[5, 0] = p[0];        X[5, 1] = p[6]

    if _solve_transposed(W_dp, M, X) < SINGULAR_WARP_TOL:
        for i in range(12):
            p_new[i] = p[i]
        return -1

    # 파라미터 추출 (W_new 행 3, 4 = X 열 0, 1)
    p_new[0] = X[5, 0]           # u
    p_new[1] = X[3, 0] - 1.0     # ux
    p_new[2] = X[4, 0]           # uy
    p_new[3] = 2.0 * X[0, 0]     # uxx
    p_new[4] = X[1, 0]           # uxy
    p_new[5] = 2.0 * X[2, 0]     # uyy
    p_new[6] = X[5, 1]           # v
    p_new[7] = X[3, 1]           # vx
    p_new[8] = X[4, 1] - 1.0     # vy
    p_new[9] = 2.0 * X[0, 1]     # vxx
    p_new[10] = X[1, 1]          # vxy
    p_new[11] = 2.0 * X[2, 1]    # vyy
    return 0


@jit(nopython=True, cache=True)
def update_warp(p, dp, p_new, shape_type, work):
    """통합 Inverse Compositional Warp Update"""
    if shape_type == AFFINE:
        return update_warp_affine(p, dp, p_new)
    else:
        return update_warp_quadratic(p, dp, p_new, work)


# =============================================================================
#  7. 유틸리티
# =============================================================================

@jit(nopython=True, cache=True)
def get_num_params(shape_type):
    """파라미터 개수 반환"""
    if shape_type == AFFINE:
        return NUM_PARAMS_AFFINE
    else:
        return NUM_PARAMS_QUADRATIC


# =============================================================================
#  8. JIT 워밍업
# =============================================================================

def warmup_numba_shape():
    """Numba JIT 컴파일 워밍업"""
    xsi, eta = generate_local_coordinates(5, 4)
    n = len(xsi)
    rng = np.random.default_rng(0)
    dfdx = rng.random(n)
    dfdy = rng.random(n)
    xsi_w = np.empty(n, dtype=np.float64)
    eta_w = np.empty(n, dtype=np.float64)
    work = allocate_warp_work()

    for shape_type in (AFFINE, QUADRATIC):
        n_params = get_num_params(shape_type)
        p = np.zeros(n_params, dtype=np.float64)
        dp = rng.random(n_params) * 0.01
        J = np.empty((n, n_params), dtype=np.float64)
        H = np.empty((n_params, n_params), dtype=np.float64)
        p_new = np.empty(n_params, dtype=np.float64)

        warp(p, xsi, eta, xsi_w, eta_w, shape_type)
        compute_steepest_descent(dfdx, dfdy, xsi, eta, J, shape_type)
        compute_hessian(J, H)
        compute_dp_norm(dp, 5, 4, shape_type)
        update_warp(p, dp, p_new, shape_type, work)
