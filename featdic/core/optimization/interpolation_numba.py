"""
Numba B-spline 보간 모듈

Bicubic (3차) 및 Biquintic (5차) B-spline 보간을 Numba JIT로 구현.
scipy.ndimage.map_coordinates(prefilter=False)와 같은 값을 주며
IC-GN prange 커널 안에서 직접 호출된다.

    (a) 원본 이미지 → prefilter → B-spline 계수 (scipy, 이미지당 1회)
    (b) 임의 좌표 (y, x) → 계수에 basis function 가중합 → 보간값 (Numba)

References:
    - Unser, M. (1993). "B-spline signal processing: Part I/II"
      IEEE Trans. Signal Processing.
    - Thévenaz, P., Blu, T., Unser, M. (2000). "Interpolation revisited"
      IEEE Trans. Medical Imaging.
"""

import numpy as np
from numba import jit, float64, int64
from scipy.ndimage import spline_filter


# =============================================================================
#  1. B-spline Basis Functions (1D)
# =============================================================================

@jit(float64(float64), nopython=True, cache=True)
def _beta3(x):
    """
    Cubic B-spline basis β³(x), support [-2, 2]

        β³(x) = 2/3 - |x|² + |x|³/2,     0 ≤ |x| < 1
               = (2 - |x|)³ / 6,           1 ≤ |x| < 2
    """
    ax = abs(x)
    if ax < 1.0:
        return 2.0 / 3.0 - ax * ax + ax * ax * ax / 2.0
    elif ax < 2.0:
        t = 2.0 - ax
        return t * t * t / 6.0
    else:
        return 0.0


@jit(float64(float64), nopython=True, cache=True)
def _beta5(x):
    """
    Quintic B-spline basis β⁵(x), support [-3, 3]

    Unser (1993), Table I.
    """
    ax = abs(x)
    if ax < 1.0:
        ax2 = ax * ax
        ax4 = ax2 * ax2
        return 11.0 / 20.0 - ax2 / 2.0 + ax4 / 4.0 - ax4 * ax / 12.0
    elif ax < 2.0:
        ax2 = ax * ax
        ax3 = ax2 * ax
        ax4 = ax3 * ax
        return (17.0 / 40.0 + 5.0 * ax / 8.0 - 7.0 * ax2 / 4.0
                + 5.0 * ax3 / 4.0 - 3.0 * ax4 / 8.0 + ax4 * ax / 24.0)
    elif ax < 3.0:
        t = 3.0 - ax
        return t * t * t * t * t / 120.0
    else:
        return 0.0


@jit(float64(float64, int64), nopython=True, cache=True)
def _basis(x, order):
    if order == 3:
        return _beta3(x)
    return _beta5(x)


# =============================================================================
#  2. Prefilter (scipy 위임, 이미지당 1회)
# =============================================================================

def prefilter_image(image, order=5):
    """
    이미지 → B-spline 계수 변환

    Args:
        image: 2D 그레이스케일 배열
        order: 3 (cubic) 또는 5 (quintic)
    """
    if order not in (3, 5):
        raise ValueError(f"order must be 3 or 5, got {order}")
    return spline_filter(np.asarray(image, dtype=np.float64),
                         order=order, mode='constant')


# =============================================================================
#  3. 경계 인덱스 미러링
# =============================================================================
# map_coordinates는 계수 테이블 범위 밖 인덱스를 mirror 반사로 접근한다.
# index < 0 → -index,  index ≥ N → 2*(N-1) - index

@jit(int64(int64, int64), nopython=True, cache=True)
def _mirror_index(idx, n):
    if n == 1:
        return 0
    if idx < 0:
        idx = -idx
    if idx >= n:
        idx = 2 * (n - 1) - idx
    return idx


# =============================================================================
#  4. 2D B-spline 보간
# =============================================================================

@jit(float64(float64[:, :], float64, float64, int64), nopython=True, cache=True)
def interp_point(coeffs, y, x, order):
    """
    단일 좌표 B-spline 보간

    order 3: 4×4 계수 (offset -1 ~ +2), order 5: 6×6 계수 (offset -2 ~ +3).
    separable 1D basis 가중합.
    """
    h = coeffs.shape[0]
    w = coeffs.shape[1]

    taps = order + 1
    lead = (order - 1) // 2

    iy = int(np.floor(y))
    ix = int(np.floor(x))
    fy = y - iy
    fx = x - ix

    result = 0.0
    for ky in range(taps):
        wy = _basis(fy - (ky - lead), order)
        if wy == 0.0:
            continue
        my = _mirror_index(int64(iy - lead + ky), int64(h))

        row_sum = 0.0
        for kx in range(taps):
            wx = _basis(fx - (kx - lead), order)
            if wx == 0.0:
                continue
            mx = _mirror_index(int64(ix - lead + kx), int64(w))
            row_sum += coeffs[my, mx] * wx

        result += row_sum * wy

    return result


@jit(nopython=True, cache=True)
def interp2d_into(coeffs, y_coords, x_coords, order, out):
    """다수 좌표 보간, 결과를 사전 할당 배열 out에 기록"""
    for i in range(len(y_coords)):
        out[i] = interp_point(coeffs, y_coords[i], x_coords[i], order)


@jit(nopython=True, cache=True)
def interp2d(coeffs, y_coords, x_coords, order):
    """
    다수 좌표 보간

    Args:
        coeffs: prefilter된 B-spline 계수 (H, W)
        y_coords, x_coords: 좌표 배열 (N,)
        order: 3 또는 5

    Returns:
        보간값 배열 (N,)
    """
    out = np.empty(len(y_coords), dtype=np.float64)
    interp2d_into(coeffs, y_coords, x_coords, order, out)
    return out


# =============================================================================
#  5. 경계 체크
# =============================================================================

@jit(nopython=True, cache=True)
def is_inside_batch(y_coords, x_coords, height, width):
    """모든 좌표가 [0, width-1] × [0, height-1] 안에 있으면 True"""
    for i in range(len(y_coords)):
        y = y_coords[i]
        x = x_coords[i]
        # NaN은 비교가 모두 False
        if not (y >= 0.0 and y <= height - 1):
            return False
        if not (x >= 0.0 and x <= width - 1):
            return False
    return True


# =============================================================================
#  6. Numba JIT 워밍업
# =============================================================================

def warmup_numba_interp():
    """Numba JIT 컴파일 워밍업"""
    dummy = np.random.default_rng(0).random((20, 20))
    y = np.array([10.5, 10.3], dtype=np.float64)
    x = np.array([10.5, 10.7], dtype=np.float64)
    for order in (3, 5):
        coeffs = prefilter_image(dummy, order=order)
        interp2d(coeffs, y, x, order)
    is_inside_batch(y, x, 20, 20)
