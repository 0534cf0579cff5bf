"""
Shape Function 모듈

Affine (1차, 6 파라미터) 및 Quadratic (2차, 12 파라미터) 변형 함수.
shape_order 정수(1 또는 2) 하나로 분기하며 반복 골격은 공유한다.

    1차: p = [u, ux, uy, v, vx, vy]
    2차: p = [u, ux, uy, uxx, uxy, uyy, v, vx, vy, vxx, vxy, vyy]

References:
    - Pan, B., et al. "Fast, robust and accurate DIC calculation without
      redundant computations." Experimental Mechanics, 2013.
    - Jiang, Z., et al. "Path-independent digital image correlation with
      high accuracy, speed and robustness." Optics and Lasers in Engineering, 2015.
    - Gao, Y., et al. "High-efficiency and high-accuracy digital image
      correlation for three-dimensional measurement." Optics and Lasers
      in Engineering, 2015. (2차 inverse compositional update)
"""

import numpy as np
from typing import Tuple

# |det W(Δp)| 이 값 미만이면 갱신하지 않고 p 유지 (Numba 경로와 공유)
SINGULAR_WARP_TOL = 1e-12


def _check_order(shape_order: int) -> None:
    if shape_order not in (1, 2):
        raise ValueError(f"shape_order must be 1 or 2, got {shape_order}")


# ===== 로컬 좌표 생성 =====

def generate_local_coordinates(radius_x: int,
                               radius_y: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    로컬 좌표 (ξ, η) 생성

    (2·ry+1) × (2·rx+1) 서브셋을 행 우선(row-major)으로 펼친 좌표.
    """
    xs = np.arange(-radius_x, radius_x + 1, dtype=np.float64)
    ys = np.arange(-radius_y, radius_y + 1, dtype=np.float64)

    eta_2d, xsi_2d = np.meshgrid(ys, xs, indexing='ij')

    return xsi_2d.ravel().copy(), eta_2d.ravel().copy()


# ===== Affine (1차) =====

def warp_affine(
    p: np.ndarray,
    xsi: np.ndarray,
    eta: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Affine warp 적용

    p = [u, ux, uy, v, vx, vy]
    """
    u, ux, uy, v, vx, vy = p[:6]

    xsi_w = (1 + ux) * xsi + uy * eta + u
    eta_w = vx * xsi + (1 + vy) * eta + v

    return xsi_w, eta_w


def compute_steepest_descent_affine(
    dfdx: np.ndarray,
    dfdy: np.ndarray,
    xsi: np.ndarray,
    eta: np.ndarray
) -> np.ndarray:
    """
    Steepest Descent Image (Affine)

    J = [∂f/∂x, ∂f/∂x·ξ, ∂f/∂x·η, ∂f/∂y, ∂f/∂y·ξ, ∂f/∂y·η]
    """
    J = np.empty((len(dfdx), 6), dtype=np.float64)

    J[:, 0] = dfdx
    J[:, 1] = dfdx * xsi
    J[:, 2] = dfdx * eta
    J[:, 3] = dfdy
    J[:, 4] = dfdy * xsi
    J[:, 5] = dfdy * eta

    return J


# ===== Quadratic (2차) =====

def warp_quadratic(
    p: np.ndarray,
    xsi: np.ndarray,
    eta: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Quadratic warp 적용

    p = [u, ux, uy, uxx, uxy, uyy, v, vx, vy, vxx, vxy, vyy]
         0   1   2   3    4    5   6   7   8   9    10   11
    """
    u, ux, uy, uxx, uxy, uyy = p[0:6]
    v, vx, vy, vxx, vxy, vyy = p[6:12]

    xsi2 = xsi * xsi
    eta2 = eta * eta
    xsi_eta = xsi * eta

    xsi_w = (u + (1 + ux) * xsi + uy * eta +
             0.5 * uxx * xsi2 + uxy * xsi_eta + 0.5 * uyy * eta2)

    eta_w = (v + vx * xsi + (1 + vy) * eta +
             0.5 * vxx * xsi2 + vxy * xsi_eta + 0.5 * vyy * eta2)

    return xsi_w, eta_w


def compute_steepest_descent_quadratic(
    dfdx: np.ndarray,
    dfdy: np.ndarray,
    xsi: np.ndarray,
    eta: np.ndarray
) -> np.ndarray:
    """Steepest Descent Image (Quadratic)"""
    xsi2 = xsi * xsi
    eta2 = eta * eta
    xsi_eta = xsi * eta

    J = np.empty((len(dfdx), 12), dtype=np.float64)

    # u 관련 (0-5)
    J[:, 0] = dfdx
    J[:, 1] = dfdx * xsi
    J[:, 2] = dfdx * eta
    J[:, 3] = 0.5 * dfdx * xsi2
    J[:, 4] = dfdx * xsi_eta
    J[:, 5] = 0.5 * dfdx * eta2

    # v 관련 (6-11)
    J[:, 6] = dfdy
    J[:, 7] = dfdy * xsi
    J[:, 8] = dfdy * eta
    J[:, 9] = 0.5 * dfdy * xsi2
    J[:, 10] = dfdy * xsi_eta
    J[:, 11] = 0.5 * dfdy * eta2

    return J


# ===== Warp 행렬 =====

def affine_warp_matrix(p: np.ndarray) -> np.ndarray:
    """1차 파라미터 → 3×3 동차 행렬"""
    return np.array([
        [1.0 + p[1], p[2], p[0]],
        [p[4], 1.0 + p[5], p[3]],
        [0.0, 0.0, 1.0]
    ], dtype=np.float64)


def _quadratic_A_terms(u, ux, uy, uxx, uxy, uyy, v, vx, vy, vxx, vxy, vyy):
    """2차 warp의 6×6 확장 행렬 상단 3행 항"""
    A1 = 2*ux + ux**2 + u*uxx
    A2 = 2*u*uxy + 2*(1+ux)*uy
    A3 = uy**2 + u*uyy
    A4 = 2*u*(1+ux)
    A5 = 2*u*uy
    A6 = u**2

    A7 = 0.5*(v*uxx + 2*(1+ux)*vx + u*vxx)
    A8 = uy*vx + ux*vy + v*uxy + u*vxy + vy + ux
    A9 = 0.5*(v*uyy + 2*(1+vy)*uy + u*vyy)
    A10 = v + v*ux + u*vx
    A11 = u + v*uy + u*vy
    A12 = u*v

    A13 = vx**2 + v*vxx
    A14 = 2*v*vxy + 2*vx*(1+vy)
    A15 = 2*vy + vy**2 + v*vyy
    A16 = 2*v*vx
    A17 = 2*v*(1+vy)
    A18 = v**2

    return (A1, A2, A3, A4, A5, A6, A7, A8, A9,
            A10, A11, A12, A13, A14, A15, A16, A17, A18)


def quadratic_warp_matrix(p: np.ndarray) -> np.ndarray:
    """
    2차 파라미터 → 6×6 확장 행렬

    [ξ², ξη, η², ξ, η, 1]ᵀ 벡터에 작용하는 선형 사상으로,
    행 3, 4가 warp된 (ξ', η')를 준다.
    """
    u, ux, uy, uxx, uxy, uyy = p[0:6]
    v, vx, vy, vxx, vxy, vyy = p[6:12]

    A = _quadratic_A_terms(u, ux, uy, uxx, uxy, uyy, v, vx, vy, vxx, vxy, vyy)
    return np.array([
        [1+A[0],    A[1],     A[2],    A[3],    A[4],   A[5]],
        [A[6],    1+A[7],     A[8],    A[9],   A[10],  A[11]],
        [A[12],    A[13],  1+A[14],   A[15],   A[16],  A[17]],
        [0.5*uxx,   uxy,  0.5*uyy,   1+ux,      uy,      u],
        [0.5*vxx,   vxy,  0.5*vyy,     vx,    1+vy,      v],
        [0,           0,        0,      0,       0,      1]
    ], dtype=np.float64)


# ===== Inverse Compositional Warp Update =====
# Based on Jiang et al. (2015) - 역행렬 계산 회피

def _update_affine_direct(p: np.ndarray, dp: np.ndarray) -> np.ndarray:
    """
    Affine Warp Update - 직접 계산 (역행렬 회피)

    W(p) ← W(p) · W(Δp)^(-1)
    """
    u, ux, uy = p[0], p[1], p[2]
    v, vx, vy = p[3], p[4], p[5]

    du, dux, duy = dp[0], dp[1], dp[2]
    dv, dvx, dvy = dp[3], dp[4], dp[5]

    # Determinant of W(dp): det = (1+dux)(1+dvy) - duy*dvx
    det = (1.0 + dux) * (1.0 + dvy) - duy * dvx

    if abs(det) < SINGULAR_WARP_TOL:
        return p.copy()

    inv_det = 1.0 / det

    # W_dp = [[1+dux, duy, du], [dvx, 1+dvy, dv], [0, 0, 1]]
    # W_dp_inv = [[a, b, c], [d, e, f], [0, 0, 1]]
    a = (1.0 + dvy) * inv_det
    b = -duy * inv_det
    c = (duy * dv - du * (1.0 + dvy)) * inv_det
    d = -dvx * inv_det
    e = (1.0 + dux) * inv_det
    f = (dvx * du - dv * (1.0 + dux)) * inv_det

    new_00 = (1.0 + ux) * a + uy * d      # 1 + ux_new
    new_01 = (1.0 + ux) * b + uy * e      # uy_new
    new_02 = (1.0 + ux) * c + uy * f + u  # u_new

    new_10 = vx * a + (1.0 + vy) * d      # vx_new
    new_11 = vx * b + (1.0 + vy) * e      # 1 + vy_new
    new_12 = vx * c + (1.0 + vy) * f + v  # v_new

    return np.array([
        new_02,         # u
        new_00 - 1.0,   # ux
        new_01,         # uy
        new_12,         # v
        new_10,         # vx
        new_11 - 1.0    # vy
    ], dtype=np.float64)


def _update_quadratic_matrix(p: np.ndarray, dp: np.ndarray) -> np.ndarray:
    """
    Quadratic Warp Update - 6×6 확장 행렬 방식

    W(p) ← W(p) · W(Δp)^(-1)
    """
    W_p = quadratic_warp_matrix(p)
    W_dp = quadratic_warp_matrix(dp)

    if abs(np.linalg.det(W_dp)) < SINGULAR_WARP_TOL:
        return p.copy()

    W_new = W_p @ np.linalg.inv(W_dp)

    # 파라미터 추출 (행 3, 4에서)
    return np.array([
        W_new[3, 5],        # u
        W_new[3, 3] - 1.0,  # ux
        W_new[3, 4],        # uy
        2.0 * W_new[3, 0],  # uxx
        W_new[3, 1],        # uxy
        2.0 * W_new[3, 2],  # uyy
        W_new[4, 5],        # v
        W_new[4, 3],        # vx
        W_new[4, 4] - 1.0,  # vy
        2.0 * W_new[4, 0],  # vxx
        W_new[4, 1],        # vxy
        2.0 * W_new[4, 2]   # vyy
    ], dtype=np.float64)


def update_warp_inverse_compositional(
    p: np.ndarray,
    dp: np.ndarray,
    shape_order: int = 1
) -> np.ndarray:
    """
    Inverse Compositional Warp Update

    W(p) ← W(p) · W(Δp)^(-1)

    단순 덧셈(p + Δp)이 아니라 warp 합성이다. 입력은 수정하지 않는다.
    W(Δp)가 특이(|det| < SINGULAR_WARP_TOL)하면 p의 복사본을 돌려준다.
    """
    _check_order(shape_order)
    p = np.asarray(p, dtype=np.float64)
    dp = np.asarray(dp, dtype=np.float64)

    if shape_order == 1:
        return _update_affine_direct(p, dp)
    return _update_quadratic_matrix(p, dp)


# ===== 수렴 조건 =====

def compute_dp_norm(
    dp: np.ndarray,
    radius_x: int,
    radius_y: int,
    shape_order: int = 1
) -> float:
    """
    파라미터 증분 노름: 서브셋 크기 가중 (Jiang et al., 2015)

    서브셋 가장자리에서의 변위 변화량 기준.
    dp_ux * rx는 서브셋 끝에서 ux gradient로 인한 변위 기여분.
    """
    rx = float(radius_x)
    ry = float(radius_y)

    if shape_order == 1:
        # p = [u, ux, uy, v, vx, vy]
        norm_sq = (dp[0]**2
                   + (dp[1] * rx)**2
                   + (dp[2] * ry)**2
                   + dp[3]**2
                   + (dp[4] * rx)**2
                   + (dp[5] * ry)**2)
    else:
        norm_sq = (dp[0]**2
                   + (dp[1] * rx)**2
                   + (dp[2] * ry)**2
                   + (0.5 * dp[3] * rx * rx)**2
                   + (dp[4] * rx * ry)**2
                   + (0.5 * dp[5] * ry * ry)**2
                   + dp[6]**2
                   + (dp[7] * rx)**2
                   + (dp[8] * ry)**2
                   + (0.5 * dp[9] * rx * rx)**2
                   + (dp[10] * rx * ry)**2
                   + (0.5 * dp[11] * ry * ry)**2)

    return float(np.sqrt(norm_sq))


# ===== 공통 함수 =====

def compute_hessian(J: np.ndarray) -> np.ndarray:
    """
    Hessian matrix 계산

    H = J^T @ J
    """
    return J.T @ J


# ===== 통합 인터페이스 =====

def warp(p: np.ndarray, xsi: np.ndarray, eta: np.ndarray,
         shape_order: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """통합 warp 함수"""
    _check_order(shape_order)
    if shape_order == 1:
        return warp_affine(p, xsi, eta)
    return warp_quadratic(p, xsi, eta)


def compute_steepest_descent(dfdx: np.ndarray, dfdy: np.ndarray,
                             xsi: np.ndarray, eta: np.ndarray,
                             shape_order: int = 1) -> np.ndarray:
    """통합 Steepest Descent 함수"""
    _check_order(shape_order)
    if shape_order == 1:
        return compute_steepest_descent_affine(dfdx, dfdy, xsi, eta)
    return compute_steepest_descent_quadratic(dfdx, dfdy, xsi, eta)
