"""유틸리티 모듈"""

from .logger import setup_logger

__all__ = ['setup_logger']
