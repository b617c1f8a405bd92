r"""
Dispersion correction of continuously sampled blood curves.

Blood drawn through the tubing of an automatic sampler is smeared out before it reaches the detector. The usual
model is a first-order lag with time constant :math:`\tau`:

.. math::

    \frac{\mathrm{d}C_d}{\mathrm{d}t} = \frac{C(t) - C_d(t)}{\tau}

so the true curve is recovered from the measured (dispersed) one as

.. math::

    C(t) = C_d(t) + \tau\frac{\mathrm{d}C_d}{\mathrm{d}t}.

The derivative amplifies sampling noise, so the corrected curve may be passed through a few rounds of 3-point
moving-average smoothing.

"""
import logging
from typing import Union

import numpy as np

from ..utils.errors import InvalidParameterError
from .measurement import Measurement, SampleSeries

logger = logging.getLogger(__name__)

MAX_GRID_POINTS = 1_000_000


def _check_series(times: np.ndarray, activity: np.ndarray, tau: float):
    times = np.asarray(times, float)
    activity = np.asarray(activity, float)
    if times.ndim != 1 or times.shape != activity.shape:
        raise InvalidParameterError("`times` and `activity` must be 1D arrays of the same length.")
    if len(times) < 2:
        raise InvalidParameterError("At least two samples are required.")
    if not (np.all(np.isfinite(times)) and np.all(np.isfinite(activity))):
        raise InvalidParameterError("`times` and `activity` must be finite.")
    if np.any(np.diff(times) <= 0):
        raise InvalidParameterError("`times` must be strictly increasing.")
    if not np.isfinite(tau) or tau < 0:
        raise InvalidParameterError(f"The dispersion constant must be non-negative, got {tau}.")
    return times, activity


def moving_average_3pt(vals: np.ndarray, iterations: int = 1) -> np.ndarray:
    """Applies ``iterations`` rounds of a centered 3-point moving average. The end points are left unchanged."""
    out = np.array(vals, float)
    for _ in range(iterations):
        out[1:-1] = (out[:-2] + out[1:-1] + out[2:]) / 3.0
    return out


def correct_dispersion(times: np.ndarray,
                       activity: np.ndarray,
                       tau: float,
                       time_delta: Union[float, None] = None,
                       smooth_iterations: int = 0) -> np.ndarray:
    r"""
    Removes first-order dispersion from a blood curve.

    The curve is linearly interpolated onto a regular grid of step ``time_delta``, corrected with
    :math:`C_d+\tau\,\mathrm{d}C_d/\mathrm{d}t` (second-order central differences via :func:`numpy.gradient`),
    optionally smoothed, and interpolated back to the original sample times.

    Args:
        times (np.ndarray): Strictly increasing sample times in minutes.
        activity (np.ndarray): Dispersed activity.
        tau (float): Dispersion time constant in minutes. Zero leaves the curve unchanged.
        time_delta (float, optional): Grid step in minutes. Defaults to the median sampling interval.
            The grid may have at most :data:`MAX_GRID_POINTS` points.
        smooth_iterations (int): Rounds of 3-point moving-average smoothing applied after the correction.

    Returns:
        np.ndarray: Corrected activity at ``times``.

    Raises:
        InvalidParameterError: For non-increasing times, a negative ``tau``, mismatched shapes, a negative
            smoothing count, or a grid step too small for the sampled range.
    """
    times, activity = _check_series(times, activity, tau)
    if smooth_iterations < 0:
        raise InvalidParameterError("`smooth_iterations` must be non-negative.")
    if tau == 0:
        return activity.copy()

    if time_delta is None:
        time_delta = float(np.median(np.diff(times)))
    if not time_delta > 0:
        raise InvalidParameterError("`time_delta` must be positive.")
    if (times[-1] - times[0]) / time_delta >= MAX_GRID_POINTS:
        raise InvalidParameterError(f"A grid step of {time_delta:.3g} min needs more than {MAX_GRID_POINTS} points "
                                    f"over {times[-1] - times[0]:.3g} min.")
    num = int(np.floor((times[-1] - times[0]) / time_delta + 1e-9)) + 1
    grid = times[0] + np.arange(num) * time_delta
    if grid[-1] < times[-1]:
        grid = np.append(grid, times[-1])
    grid_vals = np.interp(grid, times, activity)

    corrected = grid_vals + tau * np.gradient(grid_vals, grid, edge_order=2 if len(grid) > 2 else 1)
    corrected = moving_average_3pt(corrected, smooth_iterations)
    logger.debug("Dispersion corrected with tau=%.4g min on %d grid points.", tau, len(grid))
    return np.interp(times, grid, corrected)


def apply_dispersion(times: np.ndarray, activity: np.ndarray, tau: float) -> np.ndarray:
    r"""
    Applies first-order dispersion to a curve, the forward model of :func:`correct_dispersion`.

    The lag equation is integrated exactly for a piecewise-linear input. Over a step :math:`h` with
    :math:`e=e^{-h/\tau}` and input slope :math:`s`,

    .. math::

        C_d(t+h) = C_d(t)e + C(t+h) - s\tau - \left(C(t) - s\tau\right)e

    starting from :math:`C_d(t_0)=C(t_0)`.

    Args:
        times (np.ndarray): Strictly increasing sample times in minutes.
        activity (np.ndarray): Undispersed activity.
        tau (float): Dispersion time constant in minutes.

    Returns:
        np.ndarray: Dispersed activity at ``times``.
    """
    times, activity = _check_series(times, activity, tau)
    if tau == 0:
        return activity.copy()
    out = np.empty_like(activity)
    out[0] = activity[0]
    for i in range(1, len(times)):
        step = times[i] - times[i - 1]
        decay = np.exp(-step / tau)
        slope = (activity[i] - activity[i - 1]) / step
        out[i] = out[i - 1] * decay + (activity[i] - slope * tau) - (activity[i - 1] - slope * tau) * decay
    return out


def correct_blood_dispersion(measurement: Measurement,
                             tau: float,
                             time_delta: Union[float, None] = None,
                             smooth_iterations: int = 0) -> Measurement:
    """
    Returns a new measurement whose continuously sampled blood is dispersion corrected.

    Only the samples flagged as continuous are corrected; if no sample is flagged, all blood samples are. Manual samples
    are drawn without tubing dispersion and are left untouched.

    Args:
        measurement (Measurement): Source measurement. It is not modified.
        tau (float): Dispersion time constant in minutes.
        time_delta (float, optional): Grid step in minutes.
        smooth_iterations (int): Rounds of smoothing after the correction.

    Returns:
        Measurement: Snapshot with corrected blood samples.

    Raises:
        InvalidParameterError: If the measurement has no blood samples, or for invalid correction settings.
    """
    blood = measurement.blood
    if blood is None:
        raise InvalidParameterError("The measurement has no blood samples to correct.")
    mask = blood.continuous if np.any(blood.continuous) else np.ones(len(blood), bool)
    values = np.array(blood.values)
    values[mask] = correct_dispersion(blood.times[mask], blood.values[mask], tau=tau, time_delta=time_delta,
                                      smooth_iterations=smooth_iterations)
    corrected = SampleSeries(times=blood.times, values=values, weights=blood.weights, continuous=blood.continuous)
    return measurement.with_blood(corrected)
