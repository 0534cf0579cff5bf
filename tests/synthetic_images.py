"""
테스트용 합성 이미지 / 특징점 생성

스페클 패턴을 해석적 함수(정현파 합)로 정의하여, 변형 이미지를
보간 없이 정확히 샘플링한다. 결과 오차는 풀이기 자체의 오차만 반영.
"""

import numpy as np


def speckle_pattern(x, y, seed=42, n_waves=12):
    """
    해석적 스페클 패턴 f(x, y)

    무작위 방향, 파장 12~30 px 정현파의 합. 모든 방향으로 gradient를 가진다.
    """
    rng = np.random.default_rng(seed)
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)

    img = np.full(np.broadcast(x, y).shape, 128.0)
    for _ in range(n_waves):
        theta = rng.uniform(0.0, np.pi)
        wavelength = rng.uniform(12.0, 30.0)
        k = 2.0 * np.pi / wavelength
        phase = rng.uniform(0.0, 2.0 * np.pi)
        amp = rng.uniform(8.0, 16.0)
        img = img + amp * np.sin(k * (np.cos(theta) * x + np.sin(theta) * y) + phase)
    return img


def grid(height, width):
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
    return xx, yy


def make_reference(size=200, seed=42):
    xx, yy = grid(size, size)
    return speckle_pattern(xx, yy, seed=seed)


def make_translated(size=200, shift_x=2.0, shift_y=-1.0, seed=42):
    """tar(X) = ref(X - t)"""
    xx, yy = grid(size, size)
    ref = speckle_pattern(xx, yy, seed=seed)
    tar = speckle_pattern(xx - shift_x, yy - shift_y, seed=seed)
    return ref, tar


def make_affine_pair(A, t, size=200, seed=42):
    """
    전역 affine 변형 x' = A x + t 로 만든 (ref, tar)

    tar(X) = ref(A^-1 (X - t))
    """
    A = np.asarray(A, dtype=np.float64)
    t = np.asarray(t, dtype=np.float64)
    xx, yy = grid(size, size)
    A_inv = np.linalg.inv(A)
    dx = xx - t[0]
    dy = yy - t[1]
    src_x = A_inv[0, 0] * dx + A_inv[0, 1] * dy
    src_y = A_inv[1, 0] * dx + A_inv[1, 1] * dy
    ref = speckle_pattern(xx, yy, seed=seed)
    tar = speckle_pattern(src_x, src_y, seed=seed)
    return ref, tar


def affine_truth(A, t, cx, cy):
    """affine 변형의 점 (cx, cy)에서의 1차 파라미터 [u, ux, uy, v, vx, vy]"""
    A = np.asarray(A, dtype=np.float64)
    mapped = A @ np.array([cx, cy], dtype=np.float64) + np.asarray(t)
    return np.array([
        mapped[0] - cx, A[0, 0] - 1.0, A[0, 1],
        mapped[1] - cy, A[1, 0], A[1, 1] - 1.0,
    ])


def quadratic_displacement(p, xi, eta):
    """2차 파라미터 p (12)의 로컬 변위 (du, dv)"""
    u, ux, uy, uxx, uxy, uyy, v, vx, vy, vxx, vxy, vyy = p
    du = (u + ux * xi + uy * eta
          + 0.5 * uxx * xi * xi + uxy * xi * eta + 0.5 * uyy * eta * eta)
    dv = (v + vx * xi + vy * eta
          + 0.5 * vxx * xi * xi + vxy * xi * eta + 0.5 * vyy * eta * eta)
    return du, dv


def make_quadratic_pair(p, center, size=200, seed=42, n_fixed_point=60):
    """
    center 기준 전역 2차 변형으로 만든 (ref, tar)

    X = c + ξ + U(ξ) 를 ξ에 대해 고정점 반복으로 풀어
    tar(X) = ref(c + ξ) 를 샘플링한다.
    """
    cx, cy = center
    xx, yy = grid(size, size)
    xi = xx - cx
    eta = yy - cy
    for _ in range(n_fixed_point):
        du, dv = quadratic_displacement(p, xi, eta)
        xi = xx - cx - du
        eta = yy - cy - dv

    ref = speckle_pattern(xx, yy, seed=seed)
    tar = speckle_pattern(cx + xi, cy + eta, seed=seed)
    return ref, tar


def make_keypoints(A, t, n=400, size=200, margin=10, n_outliers=0,
                   outlier_offset=12.0, seed=0):
    """
    affine 변형을 따르는 매칭 특징점 (ref, tar) 생성

    마지막 n_outliers개 쌍은 tar 좌표를 outlier_offset 이상 밀어낸 이상치.
    """
    rng = np.random.default_rng(seed)
    A = np.asarray(A, dtype=np.float64)
    ref = rng.uniform(margin, size - margin, (n, 2))
    tar = ref @ A.T + np.asarray(t, dtype=np.float64)
    if n_outliers > 0:
        angles = rng.uniform(0.0, 2.0 * np.pi, n_outliers)
        radius = outlier_offset + rng.uniform(0.0, 5.0, n_outliers)
        tar[-n_outliers:, 0] += radius * np.cos(angles)
        tar[-n_outliers:, 1] += radius * np.sin(angles)
    return ref, tar
