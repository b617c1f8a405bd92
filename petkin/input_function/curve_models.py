r"""
Parametric and non-parametric models for the quantities derived from blood sampling: the parent fraction and the
blood-to-plasma ratio (BPR). Blood and AIF models live in :mod:`petkin.input_function.blood_models`.

Every model shares the same contract:

* ``model.fit(times, values, weights=None, start=None, multistart=None, bounds=None)`` returns a
  :class:`FittedCurve`;
* ``model.predict(fitted, query_times)`` (or simply ``fitted(query_times)``) evaluates the fit.

Parent-fraction models:

* :class:`PowerModel`: :math:`f(t)=\left[1+(at)^b\right]^{-c}`
* :class:`ExponentialModel`: :math:`f(t)=a e^{-bt} + (1-a)e^{-ct}`
* :class:`InverseGammaModel`: :math:`f(t)=1-a\,Q(b, c/t)` with :math:`Q` the regularized upper incomplete gamma
  function
* :class:`HillModel`: :math:`f(t)=1-\frac{(1-a)t^b}{c+t^b}`
* :class:`HillGuoModel`: :math:`f(t)=p_0-\frac{(p_0-a)(t-t_0)^b}{c+(t-t_0)^b}` for :math:`t>t_0`, else
  :math:`p_0`

Parent-fraction predictions are always clipped to :math:`[0, 1]`.

BPR models:

* :class:`ConstantModel`: weighted mean.
* :class:`SmoothingSplineModel`: :class:`scipy.interpolate.UnivariateSpline`, held constant outside the samples.

"""
import logging
import warnings
from dataclasses import dataclass
from typing import Dict, Tuple, Union

import numpy as np
from scipy.interpolate import UnivariateSpline
from scipy.special import gammaincc

from ..multistart import MultistartConfig, curve_fit_with_status, multistart_curve_fit
from ..utils.errors import (BoundaryHitWarning, InsufficientDataError, InvalidParameterError,
                            NonConvergentFitError)
from .model_selection import information_criteria
from .peeling import ExponentialPeeling

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FittedCurve:
    """A curve model fitted to samples.

    Attributes:
        model (CurveModel): The model that produced the fit.
        params (dict): All parameter values by name, including parameters fixed from the data.
        param_se (dict): Standard errors of the fitted parameters as a fraction of their values.
        covariance (np.ndarray): Covariance of the free parameters.
        times (np.ndarray): Sample times the model was fit to.
        values (np.ndarray): Sample values the model was fit to.
        weights (np.ndarray): Sample weights.
        wrss (float): Weighted residual sum of squares.
        n_params (int): Number of fitted parameters (or effective parameters for splines).
        converged (bool): Optimizer convergence status.
        boundary_hit (bool): Whether any fitted parameter ended on a bound.
        payload (object): Model-specific state, e.g. spline objects.
        multistart (MultistartResult): Attempt table when the fit used multi-start optimization.
    """
    model: 'CurveModel'
    params: Dict[str, float]
    param_se: Dict[str, float]
    covariance: np.ndarray
    times: np.ndarray
    values: np.ndarray
    weights: np.ndarray
    wrss: float
    n_params: int
    converged: bool = True
    boundary_hit: bool = False
    payload: object = None
    multistart: object = None

    def __call__(self, query_times: np.ndarray) -> np.ndarray:
        return self.model.predict(self, query_times)

    @property
    def n_obs(self) -> int:
        return int(np.count_nonzero(self.weights > 0))

    @property
    def aic(self) -> float:
        return information_criteria(self.wrss, self.n_obs, self.n_params)[0]

    @property
    def bic(self) -> float:
        return information_criteria(self.wrss, self.n_obs, self.n_params)[1]

    @property
    def residuals(self) -> np.ndarray:
        return self.values - self(self.times)


def validate_samples(times: np.ndarray,
                     values: np.ndarray,
                     weights: Union[None, np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Checks and sorts samples for fitting.

    Returns:
        tuple[np.ndarray, np.ndarray, np.ndarray]: Times, values and weights sorted by time.

    Raises:
        InvalidParameterError: For mismatched shapes, non-finite samples or negative weights.
    """
    times = np.asarray(times, float)
    values = np.asarray(values, float)
    weights = np.ones_like(times) if weights is None else np.asarray(weights, float)
    if not (times.ndim == 1 and times.shape == values.shape == weights.shape):
        raise InvalidParameterError("Times, values and weights must be 1D arrays of the same length.")
    if not (np.all(np.isfinite(times)) and np.all(np.isfinite(values))):
        raise InvalidParameterError("Sample times and values must be finite.")
    if np.any(weights < 0) or not np.all(np.isfinite(weights)):
        raise InvalidParameterError("Weights must be finite and non-negative.")
    order = np.argsort(times, kind='stable')
    return times[order], values[order], weights[order]


def tail_mean(values: np.ndarray, fraction: float = 0.25) -> float:
    """Mean of the last ``fraction`` of the samples (at least two)."""
    num = max(2, int(np.ceil(fraction * len(values))))
    return float(np.mean(values[-num:]))


class CurveModel:
    """
    Base class for parametric curve models fit by bounded nonlinear least squares.

    Subclasses define ``name``, ``param_names``, :meth:`evaluate`, :meth:`default_bounds` and
    :meth:`start_values`. Parameters that are determined directly from the data, and therefore not optimized, are
    returned by :meth:`fixed_params`.
    """
    name = 'curve'
    param_names: Tuple[str, ...] = ()
    clip_range: Union[None, Tuple[float, float]] = None

    def evaluate(self, t: np.ndarray, **params) -> np.ndarray:
        raise NotImplementedError

    def fixed_params(self, times: np.ndarray, values: np.ndarray) -> Dict[str, float]:
        return {}

    def default_bounds(self, times: np.ndarray, values: np.ndarray) -> Dict[str, Tuple[float, float]]:
        raise NotImplementedError

    def start_values(self, times: np.ndarray, values: np.ndarray, weights: np.ndarray) -> Dict[str, float]:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}()"

    def fit(self,
            times: np.ndarray,
            values: np.ndarray,
            weights: Union[None, np.ndarray] = None,
            start: Union[None, Dict[str, float]] = None,
            multistart: Union[None, MultistartConfig] = None,
            bounds: Union[None, Dict[str, Tuple[float, float]]] = None,
            max_func_evals: int = 5000) -> FittedCurve:
        """
        Fits the model to samples.

        Without ``multistart``, a single fit starts from ``start`` (or the model's staged starting values). A fit that
        fails to converge raises :class:`NonConvergentFitError`; a fit that ends on a bound is returned with
        ``boundary_hit=True`` and a :class:`BoundaryHitWarning`. With ``multistart``, starts are drawn within the
        bounds and only fits away from the bounds are accepted.

        Args:
            times (np.ndarray): Sample times in minutes.
            values (np.ndarray): Sample values.
            weights (np.ndarray, optional): Non-negative sample weights. Defaults to ones.
            start (dict, optional): Starting values by parameter name. Missing names use the staged estimates.
            multistart (MultistartConfig, optional): Use multi-start optimization with these settings.
            bounds (dict, optional): ``(lower, upper)`` by parameter name, overriding the model defaults.
            max_func_evals (int): Maximum number of function evaluations per fit.

        Returns:
            FittedCurve: The fitted curve.

        Raises:
            InsufficientDataError: If there are fewer weighted samples than free parameters.
            NonConvergentFitError: If the optimization failed.
        """
        times, values, weights = validate_samples(times, values, weights)
        fixed = self.fixed_params(times, values)
        free_names = [name for name in self.param_names if name not in fixed]
        n_obs = int(np.count_nonzero(weights > 0))
        if n_obs < len(free_names):
            raise InsufficientDataError(f"{self.name} has {len(free_names)} free parameters but only {n_obs} "
                                        f"weighted samples were given.")

        all_bounds = self.default_bounds(times, values)
        if bounds is not None:
            unknown = set(bounds) - set(free_names)
            if unknown:
                raise InvalidParameterError(f"Unknown or fixed parameters in bounds: {sorted(unknown)}.")
            all_bounds.update(bounds)
        lo = np.asarray([all_bounds[name][0] for name in free_names], float)
        hi = np.asarray([all_bounds[name][1] for name in free_names], float)
        if np.any(hi <= lo):
            raise InvalidParameterError("Every upper bound must be larger than its lower bound.")

        def fit_func(t, *free_vals):
            return self.evaluate(t, **fixed, **dict(zip(free_names, free_vals)))

        ms_result = None
        if multistart is None:
            p0 = self.start_values(times, values, weights)
            if start is not None:
                p0.update(start)
            p0 = np.asarray([p0[name] for name in free_names], float)
            margin = 1e-6 * (hi - lo)
            p0 = np.clip(p0, lo + margin, hi - margin)
            outcome = curve_fit_with_status(f=fit_func, xdata=times, ydata=values, p0=p0, bounds_lo=lo,
                                            bounds_hi=hi, weights=weights, max_func_evals=max_func_evals)
            if not outcome.converged:
                raise NonConvergentFitError(f"{self.name} fit did not converge: {outcome.message}")
            if outcome.boundary_hit:
                warnings.warn(f"{self.name} fit converged with a parameter on its bound. Consider multi-start "
                              f"fitting or different bounds.", BoundaryHitWarning, stacklevel=2)
        else:
            ms_result = multistart_curve_fit(f=fit_func, xdata=times, ydata=values, bounds_lo=lo, bounds_hi=hi,
                                             iterations=multistart.iterations, weights=weights,
                                             seed=multistart.seed, start_lo=multistart.start_lo,
                                             start_hi=multistart.start_hi, max_func_evals=max_func_evals)
            outcome = ms_result.best

        with np.errstate(divide='ignore', invalid='ignore'):
            std_err = np.sqrt(np.diag(outcome.covariance)) / np.abs(outcome.params)
        params = dict(fixed)
        params.update(zip(free_names, map(float, outcome.params)))
        logger.debug("%s fit: %s (wrss=%.4g)", self.name, params, outcome.wrss)
        return FittedCurve(model=self, params={name: params[name] for name in self.param_names},
                           param_se=dict(zip(free_names, map(float, std_err))), covariance=outcome.covariance,
                           times=times, values=values, weights=weights, wrss=outcome.wrss,
                           n_params=len(free_names), converged=outcome.converged,
                           boundary_hit=outcome.boundary_hit, multistart=ms_result)

    def predict(self, fitted: FittedCurve, query_times: np.ndarray) -> np.ndarray:
        vals = self.evaluate(np.asarray(query_times, float), **fitted.params)
        if self.clip_range is not None:
            vals = np.clip(vals, *self.clip_range)
        return vals


class ParentFractionModel(CurveModel):
    clip_range = (0.0, 1.0)


class PowerModel(ParentFractionModel):
    r"""Power-law parent fraction :math:`f(t)=\left[1+(at)^b\right]^{-c}`."""
    name = 'power'
    param_names = ('a', 'b', 'c')

    def evaluate(self, t, a, b, c):
        t = np.clip(t, 0.0, None)
        return 1.0 / (1.0 + (a * t) ** b) ** c

    def default_bounds(self, times, values):
        return {'a': (1e-6, 10.0), 'b': (0.1, 10.0), 'c': (0.01, 10.0)}

    def start_values(self, times, values, weights):
        below_half = np.nonzero(values < 0.5)[0]
        t_half = times[below_half[0]] if len(below_half) else times[-1]
        return {'a': 1.0 / max(t_half, 1e-3), 'b': 2.0, 'c': 0.5}


class ExponentialModel(ParentFractionModel):
    r"""
    Bi-exponential parent fraction :math:`f(t)=a e^{-bt} + (1-a)e^{-ct}`.

    The two decays are exchangeable, so starting values come from :class:`ExponentialPeeling`: the slow rate
    :math:`c` is estimated on the tail, and the fast rate :math:`b` on the head of the residual.
    """
    name = 'exponential'
    param_names = ('a', 'b', 'c')

    def evaluate(self, t, a, b, c):
        t = np.clip(t, 0.0, None)
        return a * np.exp(-b * t) + (1.0 - a) * np.exp(-c * t)

    def default_bounds(self, times, values):
        return {'a': (0.0, 1.0), 'b': (1e-5, 10.0), 'c': (1e-6, 10.0)}

    def start_values(self, times, values, weights):
        (amp_fast, rate_fast), (amp_slow, rate_slow) = ExponentialPeeling(times=times, values=values,
                                                                          n_components=2, weights=weights).run()
        frac = amp_fast / max(amp_fast + amp_slow, 1e-12)
        return {'a': float(np.clip(frac, 0.05, 0.95)), 'b': rate_fast, 'c': rate_slow}


class InverseGammaModel(ParentFractionModel):
    r"""
    Inverse-gamma parent fraction :math:`f(t)=1-a\,Q(b, c/t)`, where :math:`Q` is :func:`scipy.special.gammaincc`.

    :math:`f` starts at 1 and approaches :math:`1-a` for large :math:`t`.
    """
    name = 'inverse_gamma'
    param_names = ('a', 'b', 'c')

    def evaluate(self, t, a, b, c):
        t = np.asarray(t, float)
        out = np.ones_like(t)
        pos = t > 0
        out[pos] = 1.0 - a * gammaincc(b, c / t[pos])
        return out

    def default_bounds(self, times, values):
        return {'a': (0.0, 1.0), 'b': (0.01, 20.0), 'c': (1e-3, 1e3)}

    def start_values(self, times, values, weights):
        return {'a': float(np.clip(1.0 - tail_mean(values), 0.05, 0.95)), 'b': 1.0,
                'c': float(max(np.median(times), 1e-2))}


def _linearized_hill_start(times: np.ndarray, values: np.ndarray, top: float, plateau: float) -> Tuple[float, float]:
    r"""
    Starting ``(b, c)`` for :math:`f=p_0-(p_0-a)t^b/(c+t^b)` from the regression
    :math:`\ln\frac{p_0-f}{f-a} = b\ln t - \ln c`.
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = (top - values) / (values - plateau)
        usable = (times > 0) & np.isfinite(ratio) & (ratio > 0)
        if np.count_nonzero(usable) >= 2:
            slope, intercept = np.polyfit(np.log(times[usable]), np.log(ratio[usable]), deg=1)
            if np.isfinite(slope) and slope > 0:
                return float(np.clip(slope, 0.2, 9.0)), float(np.clip(np.exp(-intercept), 1e-5, 1e5))
    median_t = max(float(np.median(times)), 1e-2)
    return 2.0, median_t ** 2


class HillModel(ParentFractionModel):
    r"""Hill parent fraction :math:`f(t)=1-\frac{(1-a)t^b}{c+t^b}`; :math:`a` is the late plateau."""
    name = 'hill'
    param_names = ('a', 'b', 'c')

    def evaluate(self, t, a, b, c):
        tb = np.clip(t, 0.0, None) ** b
        return 1.0 - (1.0 - a) * tb / (c + tb)

    def default_bounds(self, times, values):
        return {'a': (0.0, 1.0), 'b': (0.1, 10.0), 'c': (1e-6, 1e6)}

    def start_values(self, times, values, weights):
        plateau = float(np.clip(0.9 * tail_mean(values), 0.01, 0.95))
        b, c = _linearized_hill_start(times, values, top=1.0, plateau=plateau)
        return {'a': plateau, 'b': b, 'c': c}


class HillGuoModel(ParentFractionModel):
    r"""
    Hill parent fraction with a delay, as modified by Guo et al.:

    .. math::

        f(t) = \begin{cases} p_0 & t\leq t_0\\
        p_0-\frac{(p_0-a)(t-t_0)^b}{c+(t-t_0)^b} & t>t_0\end{cases}

    The initial parent fraction :math:`p_0` is fixed by configuration. Starting values are staged: the plateau
    :math:`a` from the tail, the delay :math:`t_0` from the head samples still at :math:`p_0`, and :math:`b, c` from a
    linearized Hill on the remaining samples.

    Args:
        ppf0 (float): Parent fraction before the delay. Defaults to 1.
    """
    name = 'hill_guo'
    param_names = ('t0', 'a', 'b', 'c')

    def __init__(self, ppf0: float = 1.0):
        if not 0.0 < ppf0 <= 1.0:
            raise InvalidParameterError("`ppf0` must be in (0, 1].")
        self.ppf0 = ppf0

    def __repr__(self):
        return f"HillGuoModel(ppf0={self.ppf0})"

    def evaluate(self, t, t0, a, b, c):
        ub = np.clip(np.asarray(t, float) - t0, 0.0, None) ** b
        return self.ppf0 - (self.ppf0 - a) * ub / (c + ub)

    def default_bounds(self, times, values):
        return {'t0': (0.0, max(float(np.median(times)), 1e-2)), 'a': (0.0, self.ppf0), 'b': (0.1, 10.0),
                'c': (1e-6, 1e6)}

    def start_values(self, times, values, weights):
        plateau = float(np.clip(0.9 * tail_mean(values), 0.01, 0.95 * self.ppf0))
        undecayed = np.nonzero(values >= 0.98 * self.ppf0)[0]
        t0 = 0.5 * float(times[undecayed[-1]]) if len(undecayed) and undecayed[-1] < len(times) - 2 else 0.0
        t0 = min(t0, 0.9 * self.default_bounds(times, values)['t0'][1])
        after = times > t0
        b, c = _linearized_hill_start(times[after] - t0, values[after], top=self.ppf0, plateau=plateau)
        return {'t0': t0, 'a': plateau, 'b': b, 'c': c}


class ConstantModel(CurveModel):
    """Constant curve equal to the weighted mean of the samples, typically for the blood-to-plasma ratio."""
    name = 'constant'
    param_names = ('value',)

    def evaluate(self, t, value):
        return np.full(np.shape(t), value, dtype=float)

    def fit(self, times, values, weights=None, **kwargs) -> FittedCurve:
        times, values, weights = validate_samples(times, values, weights)
        if np.sum(weights) <= 0:
            raise InsufficientDataError("A constant fit needs at least one sample with positive weight.")
        mean = float(np.average(values, weights=weights))
        wrss = float(np.sum(weights * (values - mean) ** 2))
        n_obs = int(np.count_nonzero(weights > 0))
        var = wrss / max(n_obs - 1, 1) / np.sum(weights)
        with np.errstate(divide='ignore'):
            rel_se = float(np.sqrt(var) / abs(mean))
        return FittedCurve(model=self, params={'value': mean}, param_se={'value': rel_se},
                           covariance=np.asarray([[var]]), times=times, values=values, weights=weights,
                           wrss=wrss, n_params=1)


class SmoothingSplineModel(CurveModel):
    """
    Smoothing spline through the samples, held constant before the first and after the last sample.

    Args:
        smoothing (float, optional): Smoothing factor ``s`` of :class:`scipy.interpolate.UnivariateSpline`. ``None``
            uses SciPy's default, which suits weights equal to inverse variances.
        degree (int): Spline degree, reduced automatically for very few samples.
    """
    name = 'smoothing_spline'
    param_names = ()

    def __init__(self, smoothing: Union[None, float] = None, degree: int = 3):
        self.smoothing = smoothing
        self.degree = degree

    def __repr__(self):
        return f"SmoothingSplineModel(smoothing={self.smoothing}, degree={self.degree})"

    def fit(self, times, values, weights=None, **kwargs) -> FittedCurve:
        times, values, weights = validate_samples(times, values, weights)
        if np.any(np.diff(times) <= 0):
            raise InvalidParameterError("Spline sample times must be strictly increasing.")
        if len(times) < 2:
            raise InsufficientDataError("A spline needs at least two samples.")
        degree = min(self.degree, len(times) - 1)
        spline = UnivariateSpline(times, values, w=np.sqrt(weights), k=degree, s=self.smoothing)
        return FittedCurve(model=self, params={}, param_se={}, covariance=np.empty((0, 0)), times=times,
                           values=values, weights=weights, wrss=float(spline.get_residual()),
                           n_params=len(spline.get_coeffs()), payload=spline)

    def predict(self, fitted: FittedCurve, query_times: np.ndarray) -> np.ndarray:
        query_times = np.clip(np.asarray(query_times, float), fitted.times[0], fitted.times[-1])
        return fitted.payload(query_times)


PARENT_FRACTION_MODELS = {'power': PowerModel,
                          'exponential': ExponentialModel,
                          'inverse_gamma': InverseGammaModel,
                          'hill': HillModel,
                          'hill_guo': HillGuoModel}

BPR_MODELS = {'constant': ConstantModel,
              'smoothing_spline': SmoothingSplineModel}


def get_curve_model(name: str, **kwargs) -> CurveModel:
    """
    Instantiates a parent-fraction or BPR model by name.

    Raises:
        InvalidParameterError: If ``name`` is not a known model.
    """
    models = {**PARENT_FRACTION_MODELS, **BPR_MODELS}
    try:
        model_cls = models[name.lower()]
    except KeyError:
        raise InvalidParameterError(f"Invalid model: {name}. Must be one of {sorted(models)}.") from None
    return model_cls(**kwargs)
