"""로깅 설정 모듈"""

import logging
import sys
from pathlib import Path
from datetime import datetime


def setup_logger(name: str = "featdic",
                 level: int = logging.INFO,
                 log_file: bool = False) -> logging.Logger:
    """
    패키지 로거 설정

    모듈 로거(logging.getLogger(__name__))는 모두 'featdic' 하위에 있으므로
    이 함수로 루트 패키지 로거에 핸들러를 한 번만 붙이면 된다.

    Args:
        name: 로거 이름
        level: 로깅 레벨
        log_file: logs/featdic_YYYYMMDD.log 파일 출력 여부
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(level)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s - %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)

        file_handler = logging.FileHandler(
            log_dir / f"featdic_{datetime.now():%Y%m%d}.log",
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
