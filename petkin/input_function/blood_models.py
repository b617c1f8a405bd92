r"""
Models for whole-blood and arterial input function (AIF) curves.

* :class:`MultiExponentialModel`: a linear rise from the bolus arrival time :math:`t_0` to the observed peak
  :math:`t_p`, followed by a sum of two or three exponentials

  .. math::

      C(t) = \begin{cases} 0 & t < t_0\\
      \frac{t-t_0}{t_p-t_0}\sum_i A_i & t_0\leq t < t_p\\
      \sum_i A_i e^{-\alpha_i (t-t_p)} & t\geq t_p\end{cases}

  Components are ordered fastest first (:math:`\alpha_1>\alpha_2>\dots`). Starting values come from
  :class:`~petkin.input_function.peeling.ExponentialPeeling` on the post-peak samples.

* :class:`SplineHandoffModel`: three smoothing splines over the rise, the automatic (continuous) fall and the manual
  fall of the curve, with the automatic fall handed off to the manual fall through a linearly weighted blend. It makes
  no monotonicity assumption, so it can follow curves that rise again near the end.

"""
import logging
from dataclasses import dataclass, replace
from typing import Dict, Tuple, Union

import numpy as np

from ..utils.errors import InsufficientDataError, InvalidParameterError
from .curve_models import CurveModel, FittedCurve, SmoothingSplineModel, validate_samples
from .peeling import ExpPeelingConfig, ExponentialPeeling

logger = logging.getLogger(__name__)


class MultiExponentialModel(CurveModel):
    """
    Linear rise followed by a sum of exponentials.

    The peak time ``t_peak`` is fixed at the time of the largest sample, all other parameters are fit. At least
    ``2 * n_exp`` samples are needed after the peak.

    Args:
        n_exp (int): Number of exponential components, 2 or 3.
        peeling_config (ExpPeelingConfig, optional): Fractions of the post-peak samples assigned to each component
            when estimating starting values, slowest first.
    """
    name = 'multi_exponential'

    def __init__(self, n_exp: int = 2, peeling_config: Union[None, ExpPeelingConfig] = None):
        if n_exp not in (2, 3):
            raise InvalidParameterError(f"`n_exp` must be 2 or 3, got {n_exp}.")
        self.n_exp = n_exp
        self.peeling_config = ExpPeelingConfig() if peeling_config is None else peeling_config
        self.peeling_config.resolve(n_exp)
        self.name = f"{n_exp}exp"
        amp_rate = [(f"a{i}", f"alpha{i}") for i in range(1, n_exp + 1)]
        self.param_names = ('t0', 't_peak') + tuple(name for pair in amp_rate for name in pair)

    def __repr__(self):
        return f"MultiExponentialModel(n_exp={self.n_exp})"

    def evaluate(self, t, t0, t_peak, **amp_rates):
        t = np.asarray(t, float)
        amps = np.asarray([amp_rates[f"a{i}"] for i in range(1, self.n_exp + 1)])
        rates = np.asarray([amp_rates[f"alpha{i}"] for i in range(1, self.n_exp + 1)])
        peak = np.sum(amps)
        out = np.zeros_like(t)
        rise = (t >= t0) & (t < t_peak)
        out[rise] = peak * (t[rise] - t0) / (t_peak - t0)
        fall = t >= t_peak
        dt = t[fall] - t_peak
        out[fall] = np.sum(amps[:, None] * np.exp(-rates[:, None] * dt[None, :]), axis=0)
        return out

    def fixed_params(self, times, values):
        return {'t_peak': float(times[np.argmax(values)])}

    def default_bounds(self, times, values):
        t_peak = float(times[np.argmax(values)])
        t0_lo = min(float(times[0]), 0.0)
        if t_peak - 1e-3 <= t0_lo:
            raise InsufficientDataError("The curve peaks at its first sample; the rise cannot be modelled.")
        n_post_peak = int(np.count_nonzero(times > t_peak))
        if n_post_peak < 2 * self.n_exp:
            raise InsufficientDataError(f"{self.name} needs at least {2 * self.n_exp} samples after the peak, got "
                                        f"{n_post_peak}.")
        bounds = {'t0': (t0_lo, t_peak - 1e-3)}
        for i in range(1, self.n_exp + 1):
            bounds[f"a{i}"] = (0.0, 2.0 * float(np.max(values)))
            bounds[f"alpha{i}"] = (1e-5, 50.0)
        return bounds

    def start_values(self, times, values, weights):
        peak_idx = int(np.argmax(values))
        t_peak = times[peak_idx]
        before = np.nonzero(values[:peak_idx] <= 0.1 * values[peak_idx])[0]
        t0 = float(times[before[-1]]) if len(before) else float(times[0]) - 1e-2
        t0 = min(t0, t_peak - 2e-3)

        peeler = ExponentialPeeling(times=times[peak_idx:] - t_peak, values=values[peak_idx:],
                                    n_components=self.n_exp, weights=weights[peak_idx:], config=self.peeling_config)
        start = {'t0': t0}
        for i, (amp, rate) in enumerate(peeler.run(), start=1):
            start[f"a{i}"] = amp
            start[f"alpha{i}"] = rate
        return start


@dataclass(frozen=True)
class SplineHandoffConfig:
    """Settings for :class:`SplineHandoffModel`.

    Attributes:
        rise_smoothing (float, optional): Smoothing factor of the rise spline.
        auto_smoothing (float, optional): Smoothing factor of the automatic-fall spline.
        manual_smoothing (float, optional): Smoothing factor of the manual-fall spline.
        blend_window (tuple[float, float], optional): Times over which the automatic fall is handed off to the
            manual fall. Defaults to the overlap between the last automatic and first manual sample.
    """
    rise_smoothing: Union[None, float] = 0.0
    auto_smoothing: Union[None, float] = None
    manual_smoothing: Union[None, float] = None
    blend_window: Union[None, Tuple[float, float]] = None


@dataclass(frozen=True)
class _Segment:
    times: np.ndarray
    values: np.ndarray
    spline: Union[None, FittedCurve] = None

    def __call__(self, query_times):
        query_times = np.asarray(query_times, float)
        if self.spline is not None:
            return self.spline(query_times)
        return np.interp(query_times, self.times, self.values)

    @property
    def n_params(self) -> int:
        return len(self.times) if self.spline is None else self.spline.n_params


def _fit_segment(times, values, weights, smoothing) -> _Segment:
    if len(times) < 4 or np.any(np.diff(times) <= 0):
        return _Segment(times=times, values=values)
    spline = SmoothingSplineModel(smoothing=smoothing).fit(times, values, weights)
    return _Segment(times=times, values=values, spline=spline)


class SplineHandoffModel:
    """
    Rise, automatic-fall and manual-fall splines joined into one curve.

    * The rise covers the samples up to and including the peak. With fewer than four samples it is linear.
    * The automatic fall covers the post-peak samples flagged as continuous, the manual fall the others. Without flags
      every post-peak sample belongs to the automatic fall.
    * Over the blend window the fall is :math:`(1-w)S_{auto}(t)+wS_{manual}(t)` with :math:`w` rising linearly from
      0 to 1, which hides offsets between the two sampling systems.
    * Beyond the last sample the curve is held at its value at the last sample time.

    Args:
        config (SplineHandoffConfig, optional): Smoothing factors and blend window.
    """
    name = 'spline_handoff'

    def __init__(self, config: Union[None, SplineHandoffConfig] = None):
        self.config = SplineHandoffConfig() if config is None else config

    def __repr__(self):
        return f"SplineHandoffModel(config={self.config})"

    def fit(self,
            times: np.ndarray,
            values: np.ndarray,
            weights: Union[None, np.ndarray] = None,
            continuous: Union[None, np.ndarray] = None,
            **kwargs) -> FittedCurve:
        """
        Fits the three segments.

        Args:
            times (np.ndarray): Sample times in minutes.
            values (np.ndarray): Sample values.
            weights (np.ndarray, optional): Sample weights.
            continuous (np.ndarray, optional): Boolean flags, ``True`` for samples from the automatic system.

        Returns:
            FittedCurve: Fit whose ``params`` hold ``t_peak``, ``blend_start`` and ``blend_end``.

        Raises:
            InsufficientDataError: With fewer than three samples, or no samples after the peak.
            InvalidParameterError: If ``continuous`` does not have one flag per sample.
        """
        continuous = np.ones(len(np.asarray(times)), dtype=bool) if continuous is None else np.asarray(continuous,
                                                                                                        bool)
        if continuous.shape != np.shape(times):
            raise InvalidParameterError("`continuous` must have one flag per sample.")
        order = np.argsort(np.asarray(times, float), kind='stable')
        continuous = continuous[order]
        times, values, weights = validate_samples(times, values, weights)
        if len(times) < 3:
            raise InsufficientDataError("The spline hand-off model needs at least three samples.")

        peak_idx = int(np.argmax(values))
        t_peak = float(times[peak_idx])
        rise_mask = times <= t_peak
        auto_mask = (times > t_peak) & continuous
        manual_mask = (times > t_peak) & ~continuous
        has_auto, has_manual = bool(np.any(auto_mask)), bool(np.any(manual_mask))
        if not (has_auto or has_manual):
            raise InsufficientDataError("The spline hand-off model needs samples after the peak.")
        # the first fall segment starts at the peak
        if has_auto:
            auto_mask[peak_idx] = True
        else:
            manual_mask[peak_idx] = True

        rise = _fit_segment(times[rise_mask], values[rise_mask], weights[rise_mask], self.config.rise_smoothing)
        auto = manual = None
        if has_auto:
            auto = _fit_segment(times[auto_mask], values[auto_mask], weights[auto_mask], self.config.auto_smoothing)
        if has_manual:
            manual = _fit_segment(times[manual_mask], values[manual_mask], weights[manual_mask],
                                  self.config.manual_smoothing)

        blend_start = blend_end = np.nan
        if auto is not None and manual is not None:
            if self.config.blend_window is not None:
                blend_start, blend_end = map(float, self.config.blend_window)
            else:
                first_manual = float(manual.times[manual.times > t_peak][0])
                last_auto = float(auto.times[-1])
                blend_start, blend_end = min(first_manual, last_auto), max(first_manual, last_auto)
            if blend_end < blend_start:
                raise InvalidParameterError("The blend window must end after it starts.")

        payload = {'rise': rise, 'auto': auto, 'manual': manual, 't_last': float(times[-1])}
        params = {'t_peak': t_peak, 'blend_start': blend_start, 'blend_end': blend_end}
        n_params = sum(seg.n_params for seg in (rise, auto, manual) if seg is not None)
        fitted = FittedCurve(model=self, params=params, param_se={}, covariance=np.empty((0, 0)), times=times,
                             values=values, weights=weights, wrss=0.0, n_params=n_params, payload=payload)
        wrss = float(np.sum(weights * (values - self.predict(fitted, times)) ** 2))
        logger.debug("Spline hand-off fit: peak at %.3g min, blend window [%.3g, %.3g].", t_peak, blend_start,
                     blend_end)
        return replace(fitted, wrss=wrss)

    @staticmethod
    def blend_weight(query_times: np.ndarray, blend_start: float, blend_end: float) -> np.ndarray:
        """Weight of the manual-fall spline, rising linearly from 0 to 1 over the blend window."""
        query_times = np.asarray(query_times, float)
        if blend_end <= blend_start:
            return (query_times >= blend_start).astype(float)
        return np.clip((query_times - blend_start) / (blend_end - blend_start), 0.0, 1.0)

    def predict(self, fitted: FittedCurve, query_times: np.ndarray) -> np.ndarray:
        segments: Dict[str, _Segment] = fitted.payload
        t = np.minimum(np.asarray(query_times, float), segments['t_last'])
        t_peak = fitted.params['t_peak']
        auto, manual = segments['auto'], segments['manual']
        if auto is None:
            fall = manual(t)
        elif manual is None:
            fall = auto(t)
        else:
            w = self.blend_weight(t, fitted.params['blend_start'], fitted.params['blend_end'])
            fall = (1.0 - w) * auto(t) + w * manual(t)
        return np.where(t < t_peak, segments['rise'](t), fall)
