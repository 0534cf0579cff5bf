"""
매칭 특징점 최근접 탐색 인덱스

참조 이미지의 매칭 특징점 좌표 위에 정적 KD-tree를 구축한다.
구축 후에는 읽기 전용이므로 여러 스레드에서 동기화 없이 질의할 수 있다.

결과 순서 규칙:
    거리 오름차순, 같은 거리면 입력(삽입) 순서 오름차순
"""

import numpy as np
from scipy.spatial import cKDTree
from typing import Optional


class NearestNeighborIndex:
    """
    2D 점 집합에 대한 반경 / k-최근접 질의

    Usage:
        index = NearestNeighborIndex(ref_kp)
        idx = index.query((120.0, 85.0), radius=20.0)
    """

    def __init__(self, points: Optional[np.ndarray] = None):
        self._points = np.empty((0, 2), dtype=np.float64)
        self._tree = None
        if points is not None:
            self.build(points)

    def build(self, points) -> 'NearestNeighborIndex':
        """인덱스 구축 (단일 스레드, 질의 시작 전 1회)"""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if not np.all(np.isfinite(pts)):
            raise ValueError("keypoint coordinates must be finite")

        self._points = pts.copy()
        self._points.setflags(write=False)
        self._tree = cKDTree(self._points) if len(self._points) > 0 else None
        return self

    @property
    def points(self) -> np.ndarray:
        return self._points

    def __len__(self) -> int:
        return len(self._points)

    def _sorted_by_distance(self, center: np.ndarray,
                            indices: np.ndarray) -> np.ndarray:
        indices = np.asarray(indices, dtype=np.int64)
        if len(indices) == 0:
            return indices
        dist = np.hypot(self._points[indices, 0] - center[0],
                        self._points[indices, 1] - center[1])
        # lexsort: 마지막 키가 1순위
        order = np.lexsort((indices, dist))
        return indices[order]

    def query(self, point, radius: float) -> np.ndarray:
        """반경 radius 이내 점의 인덱스 (거리 오름차순)"""
        if self._tree is None:
            return np.empty(0, dtype=np.int64)

        center = np.asarray(point, dtype=np.float64).reshape(2)
        indices = self._tree.query_ball_point(center, r=float(radius))
        return self._sorted_by_distance(center, indices)

    def query_k(self, point, k: int) -> np.ndarray:
        """
        최근접 k개 점의 인덱스 (거리 오름차순)

        k번째 거리에서 동률이 있으면 삽입 순서가 앞선 점을 택한다.
        """
        n = len(self._points)
        if self._tree is None or k <= 0:
            return np.empty(0, dtype=np.int64)
        k = min(int(k), n)

        center = np.asarray(point, dtype=np.float64).reshape(2)
        dist, _ = self._tree.query(center, k=k)
        kth_dist = float(np.atleast_1d(dist)[-1])

        # k번째 거리와 같은 거리의 점을 모두 모은 뒤 규칙대로 잘라냄
        candidates = self._tree.query_ball_point(
            center, r=kth_dist * (1.0 + 1e-12) + 1e-12)
        return self._sorted_by_distance(center, candidates)[:k]
