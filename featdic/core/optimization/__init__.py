# featdic/core/optimization/__init__.py

from .icgn import (
    compute_icgn,
    solve_poi,
    apply_icgn_result,
    prepare_ref_cache,
    compute_gradient,
    extract_reference_subset,
    POIOutcome,
    ENGINES,
)
from .results import (
    ICGNResult,
    ICGN_CONVERGED,
    ICGN_MAX_ITER_REACHED,
    ICGN_OUT_OF_BOUNDS,
    ICGN_SINGULAR_HESSIAN,
    ICGN_INVALID_SUBSET,
    ICGN_STATUS_NAMES,
)
from .interpolation import create_interpolator, ImageInterpolator
from .shape_function import (
    warp,
    compute_steepest_descent,
    update_warp_inverse_compositional,
    compute_dp_norm,
)
from .icgn_core_numba import warmup_icgn_core
from .interpolation_numba import warmup_numba_interp
from .shape_function_numba import warmup_numba_shape

__all__ = [
    'compute_icgn',
    'solve_poi',
    'apply_icgn_result',
    'prepare_ref_cache',
    'compute_gradient',
    'extract_reference_subset',
    'POIOutcome',
    'ENGINES',
    'ICGNResult',
    'ICGN_CONVERGED',
    'ICGN_MAX_ITER_REACHED',
    'ICGN_OUT_OF_BOUNDS',
    'ICGN_SINGULAR_HESSIAN',
    'ICGN_INVALID_SUBSET',
    'ICGN_STATUS_NAMES',
    'create_interpolator',
    'ImageInterpolator',
    'warp',
    'compute_steepest_descent',
    'update_warp_inverse_compositional',
    'compute_dp_norm',
    # Numba
    'warmup_icgn_core',
    'warmup_numba_interp',
    'warmup_numba_shape',
]
