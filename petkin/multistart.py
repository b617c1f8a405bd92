"""
Nonlinear least-squares fitting with convergence and boundary bookkeeping, and randomized (or gridded) multi-start
optimization on top of it.

Every fit in the package goes through :func:`curve_fit_with_status`, a thin wrapper around
:func:`scipy.optimize.curve_fit` that reports whether the optimizer converged and whether any parameter ended on
one of its bounds. :func:`multistart_curve_fit` repeats that fit from many starting points and keeps the best
attempt that converged away from the bounds.

Random starting points are drawn from per-attempt generators spawned from a single
:class:`numpy.random.SeedSequence`, so an attempt's starting point depends only on the seed and its index. Nothing
touches numpy's global random state.

Example:

    .. code-block:: python

        import numpy as np
        from petkin.multistart import multistart_curve_fit

        def model(t, a, b):
            return a * np.exp(-b * t)

        t = np.linspace(0, 10, 50)
        result = multistart_curve_fit(f=model, xdata=t, ydata=model(t, 2.0, 0.3),
                                      bounds_lo=[0.0, 0.0], bounds_hi=[10.0, 5.0],
                                      iterations=20, seed=42)
        print(result.params)

"""
import itertools
import logging
import warnings
from dataclasses import dataclass, field
from typing import Callable, Sequence, Union

import numpy as np
from scipy.optimize import OptimizeWarning
from scipy.optimize import curve_fit as sp_cv_fit

from .utils.errors import InvalidParameterError, NonConvergentFitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurveFitOutcome:
    """Result of a single optimizer run.

    Attributes:
        params (np.ndarray): Fitted parameters. NaNs when the optimizer failed.
        covariance (np.ndarray): Parameter covariance matrix as returned by :func:`scipy.optimize.curve_fit`.
        wrss (float): Weighted residual sum of squares at ``params``.
        converged (bool): Whether the optimizer reported success and returned finite parameters.
        boundary_hit (bool): Whether any parameter ended on its lower or upper bound.
        start (np.ndarray): The starting point of the run.
        message (str): Optimizer message for failed runs.
    """
    params: np.ndarray
    covariance: np.ndarray
    wrss: float
    converged: bool
    boundary_hit: bool
    start: np.ndarray
    message: str = ''

    @property
    def acceptable(self) -> bool:
        """Converged and away from the bounds."""
        return self.converged and not self.boundary_hit


def is_at_bound(params: np.ndarray,
                bounds_lo: np.ndarray,
                bounds_hi: np.ndarray,
                rtol: float = 1.0e-6) -> np.ndarray:
    r"""
    Flags parameters that lie on (or numerically next to) their bounds.

    The tolerance at a finite bound :math:`b` is ``rtol`` times :math:`\max(1, |b|)`, capped at ``rtol`` times the
    width of the bound interval.

    Args:
        params (np.ndarray): Parameter values.
        bounds_lo (np.ndarray): Lower bounds. ``-np.inf`` for none.
        bounds_hi (np.ndarray): Upper bounds. ``np.inf`` for none.
        rtol (float): Relative tolerance.

    Returns:
        np.ndarray: Boolean array, ``True`` where a parameter sits on a bound.
    """
    params = np.asarray(params, float)
    lo = np.asarray(bounds_lo, float)
    hi = np.asarray(bounds_hi, float)
    width = np.where(np.isfinite(hi - lo), hi - lo, np.inf)
    tol_lo = rtol * np.minimum(width, np.maximum(1.0, np.abs(np.nan_to_num(lo))))
    tol_hi = rtol * np.minimum(width, np.maximum(1.0, np.abs(np.nan_to_num(hi))))
    on_lo = np.isfinite(lo) & (params - lo <= tol_lo)
    on_hi = np.isfinite(hi) & (hi - params <= tol_hi)
    return on_lo | on_hi


def weights_to_sigma(weights: Union[None, np.ndarray], n_obs: int) -> np.ndarray:
    """Converts non-negative frame weights to the ``sigma`` argument of :func:`scipy.optimize.curve_fit`."""
    if weights is None:
        return np.ones(n_obs)
    weights = np.asarray(weights, float)
    if weights.shape != (n_obs,):
        raise InvalidParameterError(f"Expected {n_obs} weights, got an array of shape {weights.shape}.")
    if np.any(weights < 0) or not np.all(np.isfinite(weights)):
        raise InvalidParameterError("Weights must be finite and non-negative.")
    with np.errstate(divide='ignore'):
        return 1.0 / np.sqrt(weights)


def curve_fit_with_status(f: Callable,
                          xdata: np.ndarray,
                          ydata: np.ndarray,
                          p0: np.ndarray,
                          bounds_lo: np.ndarray,
                          bounds_hi: np.ndarray,
                          weights: Union[None, np.ndarray] = None,
                          max_func_evals: int = 2500) -> CurveFitOutcome:
    r"""
    Runs a single bounded :func:`scipy.optimize.curve_fit` and records convergence and boundary status.

    Observations with zero weight are excluded from the optimization. The weighted residual sum of squares is
    :math:`\sum_i w_i (y_i - f(x_i))^2`. A :class:`RuntimeError` raised by the optimizer is caught and reported
    as ``converged=False``; it is the caller's job to decide how to surface it.

    Args:
        f (Callable): Model function ``f(x, *params)``.
        xdata (np.ndarray): Independent variable.
        ydata (np.ndarray): Observations.
        p0 (np.ndarray): Starting parameters.
        bounds_lo (np.ndarray): Lower bounds.
        bounds_hi (np.ndarray): Upper bounds.
        weights (np.ndarray, optional): Non-negative observation weights. Defaults to equal weights.
        max_func_evals (int): Maximum number of function evaluations.

    Returns:
        CurveFitOutcome: The fit, its covariance, weighted RSS and status flags.
    """
    xdata = np.asarray(xdata, float)
    ydata = np.asarray(ydata, float)
    p0 = np.asarray(p0, float)
    sigma = weights_to_sigma(weights, len(ydata))
    keep = np.isfinite(sigma)
    n_params = len(p0)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', OptimizeWarning)
            p_opt, p_cov = sp_cv_fit(f=lambda x, *p: f(x, *p)[keep], xdata=xdata, ydata=ydata[keep], p0=p0,
                                     bounds=(bounds_lo, bounds_hi), sigma=sigma[keep], maxfev=max_func_evals)
    except (RuntimeError, ValueError) as err:
        logger.debug("Fit from start %s failed: %s", p0, err)
        return CurveFitOutcome(params=np.full(n_params, np.nan),
                               covariance=np.full((n_params, n_params), np.inf),
                               wrss=np.inf, converged=False, boundary_hit=False, start=p0, message=str(err))

    if not np.all(np.isfinite(p_opt)):
        return CurveFitOutcome(params=p_opt, covariance=p_cov, wrss=np.inf, converged=False, boundary_hit=False,
                               start=p0, message='Non-finite parameters.')

    resid = ydata[keep] - f(xdata, *p_opt)[keep]
    wrss = float(np.sum((resid / sigma[keep]) ** 2))
    boundary_hit = bool(np.any(is_at_bound(p_opt, bounds_lo, bounds_hi)))
    return CurveFitOutcome(params=p_opt, covariance=p_cov, wrss=wrss, converged=True,
                           boundary_hit=boundary_hit, start=p0)


@dataclass(frozen=True)
class MultistartConfig:
    """Settings for :func:`multistart_curve_fit`.

    Attributes:
        iterations (int or Sequence[int]): Number of random starts, or per-parameter candidate counts for a grid.
        seed (int, optional): Seed for the random starts. ``None`` draws fresh entropy, which is logged.
        start_lo (np.ndarray, optional): Lower limits for drawing starting points. Defaults to the fit bounds.
        start_hi (np.ndarray, optional): Upper limits for drawing starting points. Defaults to the fit bounds.
    """
    iterations: Union[int, Sequence[int]] = 100
    seed: Union[int, None] = None
    start_lo: Union[None, np.ndarray] = None
    start_hi: Union[None, np.ndarray] = None


@dataclass(frozen=True)
class MultistartResult:
    """Best acceptable attempt of a multi-start optimization together with every attempt made.

    Attributes:
        best (CurveFitOutcome): The attempt with the lowest weighted RSS among acceptable attempts.
        attempts (list[CurveFitOutcome]): All attempts in the order they were run.
        seed_entropy (int): Entropy of the seed sequence, enough to reproduce random starts.
    """
    best: CurveFitOutcome
    attempts: list = field(default_factory=list)
    seed_entropy: Union[int, None] = None

    @property
    def params(self) -> np.ndarray:
        return self.best.params

    @property
    def covariance(self) -> np.ndarray:
        return self.best.covariance

    @property
    def wrss(self) -> float:
        return self.best.wrss

    @property
    def n_converged(self) -> int:
        return sum(attempt.converged for attempt in self.attempts)

    @property
    def n_boundary_hit(self) -> int:
        return sum(attempt.converged and attempt.boundary_hit for attempt in self.attempts)


def generate_starting_points(start_lo: np.ndarray,
                             start_hi: np.ndarray,
                             iterations: Union[int, Sequence[int]],
                             seed: Union[int, None, np.random.SeedSequence] = None) -> np.ndarray:
    r"""
    Generates starting points for a multi-start fit.

    * With a scalar ``iterations``, :math:`K` points are drawn uniformly within ``[start_lo, start_hi]``. Attempt
      :math:`i` draws from its own generator, spawned as child :math:`i` of the seed sequence.
    * With a sequence of per-parameter counts :math:`n_j`, the points are the Cartesian product of the evenly
      spaced interior candidates :math:`l_j + (h_j - l_j)(i + 0.5)/n_j`, for :math:`i=0,\dots,n_j-1`.

    Args:
        start_lo (np.ndarray): Lower limits, must be finite.
        start_hi (np.ndarray): Upper limits, must be finite.
        iterations (int or Sequence[int]): Number of random points, or grid counts per parameter.
        seed (int, optional): Seed (or seed sequence) for the random points.

    Returns:
        np.ndarray: Array of shape ``(n_points, n_params)``.

    Raises:
        InvalidParameterError: If the limits are not finite or ordered, or the counts are not positive.
    """
    lo = np.asarray(start_lo, float)
    hi = np.asarray(start_hi, float)
    if not (np.all(np.isfinite(lo)) and np.all(np.isfinite(hi))):
        raise InvalidParameterError("Starting-point limits must be finite. Provide `start_lo` and `start_hi`.")
    if np.any(hi < lo):
        raise InvalidParameterError("Every starting-point upper limit must be at least the lower limit.")

    if np.ndim(iterations) == 0:
        num = int(iterations)
        if num < 1:
            raise InvalidParameterError("`iterations` must be a positive integer.")
        seq = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
        children = seq.spawn(num)
        return np.asarray([np.random.default_rng(child).uniform(lo, hi) for child in children])

    counts = [int(n) for n in iterations]
    if len(counts) != len(lo) or min(counts) < 1:
        raise InvalidParameterError("Grid counts must be positive, one per parameter.")
    candidates = [l + (h - l) * (np.arange(n) + 0.5) / n for l, h, n in zip(lo, hi, counts)]
    return np.asarray(list(itertools.product(*candidates)), float)


def multistart_curve_fit(f: Callable,
                         xdata: np.ndarray,
                         ydata: np.ndarray,
                         bounds_lo: np.ndarray,
                         bounds_hi: np.ndarray,
                         iterations: Union[int, Sequence[int]] = 100,
                         weights: Union[None, np.ndarray] = None,
                         seed: Union[int, None] = None,
                         start_lo: Union[None, np.ndarray] = None,
                         start_hi: Union[None, np.ndarray] = None,
                         max_func_evals: int = 2500) -> MultistartResult:
    """
    Fits ``f`` from many starting points and returns the best fit that converged away from the bounds.

    Attempts that fail to converge or that end with any parameter on a bound are discarded. Among the rest, the one
    with the lowest weighted residual sum of squares wins; ties keep the earlier attempt.

    Args:
        f (Callable): Model function ``f(x, *params)``.
        xdata (np.ndarray): Independent variable.
        ydata (np.ndarray): Observations.
        bounds_lo (np.ndarray): Lower bounds of the fit.
        bounds_hi (np.ndarray): Upper bounds of the fit.
        iterations (int or Sequence[int]): Number of random starts, or per-parameter grid counts.
        weights (np.ndarray, optional): Non-negative observation weights.
        seed (int, optional): Seed for the random starts.
        start_lo (np.ndarray, optional): Lower limits for starting points. Defaults to ``bounds_lo``.
        start_hi (np.ndarray, optional): Upper limits for starting points. Defaults to ``bounds_hi``.
        max_func_evals (int): Maximum number of function evaluations per attempt.

    Returns:
        MultistartResult: Best acceptable attempt and the full list of attempts.

    Raises:
        NonConvergentFitError: If every attempt failed to converge or hit a bound.
    """
    bounds_lo = np.asarray(bounds_lo, float)
    bounds_hi = np.asarray(bounds_hi, float)
    start_lo = bounds_lo if start_lo is None else np.asarray(start_lo, float)
    start_hi = bounds_hi if start_hi is None else np.asarray(start_hi, float)

    seed_seq = np.random.SeedSequence(seed)
    if np.ndim(iterations) == 0 and seed is None:
        logger.info("Multi-start fit drawing random starts with seed entropy %d.", seed_seq.entropy)
    starts = generate_starting_points(start_lo, start_hi, iterations, seed=seed_seq)
    starts = np.clip(starts, bounds_lo, bounds_hi)

    attempts = [curve_fit_with_status(f=f, xdata=xdata, ydata=ydata, p0=p0, bounds_lo=bounds_lo,
                                      bounds_hi=bounds_hi, weights=weights, max_func_evals=max_func_evals)
                for p0 in starts]
    acceptable = [attempt for attempt in attempts if attempt.acceptable]
    n_conv = sum(attempt.converged for attempt in attempts)
    logger.debug("Multi-start: %d attempts, %d converged, %d acceptable.", len(attempts), n_conv, len(acceptable))

    if not acceptable:
        raise NonConvergentFitError(f"None of the {len(attempts)} attempts converged away from the parameter bounds "
                                    f"({n_conv} converged, {n_conv - len(acceptable)} of those on a bound). "
                                    f"Consider wider bounds or different starting limits.")

    best = acceptable[int(np.argmin([attempt.wrss for attempt in acceptable]))]
    return MultistartResult(best=best, attempts=attempts, seed_entropy=seed_seq.entropy)
