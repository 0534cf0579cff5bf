"""병렬 배치 처리"""

from .dispatcher import ParallelDispatcher, BatchResult, as_image

__all__ = ['ParallelDispatcher', 'BatchResult', 'as_image']
