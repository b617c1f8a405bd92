r"""
This module provides the linearized (graphical) kinetic models: the Logan plot against an arterial input or a
reference region, the multilinear Logan model, and Ichise's MA1 and MA2. Every method fits a weighted linear least
squares problem on the last ``tstar_included_frames`` frames, where the linearity assumptions of the model hold.

With :math:`C_T` the tissue TAC, :math:`C_P` the metabolite-corrected plasma input and :math:`C_R` a reference TAC:

* ``logan``: :math:`\frac{\int C_T}{C_T} = V_T\frac{\int C_P}{C_T} + b`
* ``ref_logan``: :math:`\frac{\int C_T}{C_T} = DVR\,\frac{\int C_R + C_R/k_2'}{C_T} + b`, and
  :math:`BP_{ND}=DVR-1`
* ``ml_logan``: :math:`\int C_T = V_T\int C_P + b\,C_T`
* ``ma1``: :math:`C_T = \gamma_1\int C_P + \gamma_2\int C_T`, with :math:`V_T=-\gamma_1/\gamma_2`
* ``ma2``: :math:`C_T = \gamma_1\iint C_P + \gamma_2\iint C_T + \gamma_3\int C_T + \gamma_4\int C_P`, with
  :math:`V_T=-\gamma_1/\gamma_2` and the 2TCM rate constants
  :math:`K_1=\gamma_4`, :math:`k_2=-\gamma_3-\gamma_1/\gamma_4`, :math:`k_4=-\gamma_2/k_2`,
  :math:`k_3=\gamma_1/\gamma_4-k_4`.

Integrals of the input function are computed on a dense grid. Integrals of tissue TACs use the trapezoidal rule over
the frame mid-times, starting from :math:`(0, 0)`. Arterial methods accept a blood volume fraction ``vb``; the
tissue TAC is then corrected as :math:`(C_T - v_BC_B)/(1-v_B)`.

"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Tuple, Union

import numba
import numpy as np

from ..input_function.interpolation import InputFunction
from ..input_function.measurement import Quantity
from ..utils.errors import InsufficientDataError, InvalidParameterError
from ..utils.time_activity_curve import TimeActivityCurve

logger = logging.getLogger(__name__)


@numba.njit()
def fit_multilinear_lls_with_rsquared(design: np.ndarray,
                                      ydata: np.ndarray,
                                      weights: np.ndarray) -> Tuple[np.ndarray, float, np.ndarray]:
    r"""Weighted linear least squares with the weighted :math:`R^2`.

    Solves :math:`\min_\beta \sum_i w_i (y_i - X_i\beta)^2` with :func:`numpy.linalg.lstsq` on the rows scaled by
    :math:`\sqrt{w_i}`.

    Args:
        design (np.ndarray): Design matrix of shape ``(n, p)``.
        ydata (np.ndarray): Dependent variable.
        weights (np.ndarray): Non-negative weights.

    Returns:
        tuple: The coefficients, :math:`R^2`, and the fitted values.
    """
    n_rows, n_cols = design.shape
    scaled = np.empty((n_rows, n_cols), dtype=np.float64)
    scaled_y = np.empty(n_rows, dtype=np.float64)
    for i in range(n_rows):
        sqrt_w = np.sqrt(weights[i])
        scaled_y[i] = ydata[i] * sqrt_w
        for j in range(n_cols):
            scaled[i, j] = design[i, j] * sqrt_w
    coefs = np.linalg.lstsq(scaled, scaled_y)[0]
    fitted = np.dot(design, coefs)

    y_mean = np.sum(weights * ydata) / np.sum(weights)
    ss_res = np.sum(weights * (ydata - fitted) ** 2)
    ss_tot = np.sum(weights * (ydata - y_mean) ** 2)
    r_squared = 1.0 - ss_res / ss_tot
    return coefs, r_squared, fitted


@numba.njit()
def cumulative_trapezoidal_integral(xdata: np.ndarray, ydata: np.ndarray, initial: float = 0.0) -> np.ndarray:
    """Calculates the cumulative integral of `ydata` over `xdata` using the trapezoidal rule.

    This function is based `heavily` on the :py:func:`scipy.integrate.cumulative_trapezoid` implementation.
    This implementation only works for 1D arrays and was implemented to work with :mod:`numba`.

    Args:
        xdata (np.ndarray): Array for the integration coordinate.
        ydata (np.ndarray): Array for the values to integrate
        initial (float): Value of the integral at the first point.

    Returns:
        (np.ndarray): Cumulative integral of ``ydata`` over ``xdata`` using the trapezoidal rule.
    """
    dx = np.diff(xdata)
    cum_int = np.zeros(len(xdata))
    cum_int[0] = initial
    cum_int[1:] = initial + np.cumsum(dx * (ydata[1:] + ydata[:-1]) / 2.0)

    return cum_int


def tissue_integral(tac_times: np.ndarray, tac_vals: np.ndarray) -> np.ndarray:
    """Running integral of a TAC at its frame times, by the trapezoidal rule from :math:`(0, 0)`."""
    times = np.append(0.0, tac_times)
    vals = np.append(0.0, tac_vals)
    return cumulative_trapezoidal_integral(times, vals, 0.0)[1:]


def input_integrals(input_function: InputFunction,
                    tac_times: np.ndarray,
                    inpshift: float = 0.0,
                    resample_num: int = 4096) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    Single and double running integrals of the AIF, :math:`\int_0^tC_P` and :math:`\int_0^t\int_0^sC_P`, at the frame
    times. The AIF is resolved on an evenly spaced grid of ``resample_num`` points from zero to the last frame time.
    """
    grid = np.linspace(0.0, tac_times[-1], resample_num)
    aif = input_function.resolve_shifted(Quantity.AIF, grid, inpshift)
    int_aif = cumulative_trapezoidal_integral(grid, aif, 0.0)
    int_int_aif = cumulative_trapezoidal_integral(grid, int_aif, 0.0)
    return np.interp(tac_times, grid, int_aif), np.interp(tac_times, grid, int_int_aif)


@dataclass(frozen=True)
class LinearFitResult:
    """Result of a linearized model fit.

    Attributes:
        method (str): Method name.
        coefficients (dict): Regression coefficients by name.
        r2 (float): Weighted :math:`R^2` of the regression.
        max_perc_resid (float): Largest absolute residual in percent of the dependent variable.
        outcome_name (str): Name of the outcome parameter, e.g. ``'Vt'`` or ``'BPnd'``.
        outcome (float): Value of the outcome parameter.
        included_frames (int): Number of final frames in the regression.
        xdata (np.ndarray): Design matrix.
        ydata (np.ndarray): Dependent variable.
        fitted (np.ndarray): Fitted dependent variable.
        derived (dict): Further derived parameters, e.g. the MA2 rate constants.
    """
    method: str
    coefficients: Dict[str, float]
    r2: float
    max_perc_resid: float
    outcome_name: str
    outcome: float
    included_frames: int
    xdata: np.ndarray
    ydata: np.ndarray
    fitted: np.ndarray
    derived: Dict[str, float] = field(default_factory=dict)


def _included_slice(num_frames: int, tstar_included_frames: int, n_coefs: int) -> slice:
    if not n_coefs < tstar_included_frames <= num_frames:
        raise InsufficientDataError(f"`tstar_included_frames` must be between {n_coefs + 1} and {num_frames}, "
                                    f"got {tstar_included_frames}.")
    return slice(num_frames - tstar_included_frames, num_frames)


def _run_regression(method: str,
                    design: np.ndarray,
                    ydata: np.ndarray,
                    weights: np.ndarray,
                    names: Tuple[str, ...],
                    tstar_included_frames: int) -> Tuple[Dict[str, float], float, float, np.ndarray, np.ndarray,
                                                        np.ndarray]:
    window = _included_slice(len(ydata), tstar_included_frames, design.shape[1])
    x_win = np.ascontiguousarray(design[window], dtype=float)
    y_win = np.ascontiguousarray(ydata[window], dtype=float)
    w_win = np.ascontiguousarray(weights[window], dtype=float)
    if not (np.all(np.isfinite(x_win)) and np.all(np.isfinite(y_win))):
        raise InvalidParameterError(f"{method}: non-finite regression variables in the included frames; the "
                                    f"tissue TAC may be zero there.")
    coefs, r2, fitted = fit_multilinear_lls_with_rsquared(x_win, y_win, w_win)
    with np.errstate(divide='ignore', invalid='ignore'):
        max_perc_resid = float(np.max(np.abs((y_win - fitted) / y_win)) * 100.0)
    return dict(zip(names, map(float, coefs))), float(r2), max_perc_resid, x_win, y_win, fitted


def _corrected_tissue(tac: TimeActivityCurve,
                      input_function: InputFunction,
                      vb: float,
                      inpshift: float) -> np.ndarray:
    if not 0.0 <= vb < 1.0:
        raise InvalidParameterError(f"`vb` must be in [0, 1), got {vb}.")
    if vb == 0.0:
        return np.asarray(tac.values, float)
    blood = input_function.resolve_shifted(Quantity.BLOOD, tac.times_in_minutes, inpshift)
    return (tac.values - vb * blood) / (1.0 - vb)


def logan_analysis(tac: TimeActivityCurve,
                   input_function: InputFunction,
                   tstar_included_frames: int,
                   vb: float = 0.0,
                   inpshift: float = 0.0) -> LinearFitResult:
    """
    Performs Logan analysis against an arterial input function.

    Args:
        tac (TimeActivityCurve): Tissue TAC.
        input_function (InputFunction): Input function.
        tstar_included_frames (int): Number of final frames used in the regression.
        vb (float): Blood volume fraction to remove from the TAC.
        inpshift (float): Input function delay in minutes.

    Returns:
        LinearFitResult: With outcome :math:`V_T`, the slope.
    """
    tissue = _corrected_tissue(tac, input_function, vb, inpshift)
    int_aif, _ = input_integrals(input_function, tac.times_in_minutes, inpshift)
    with np.errstate(divide='ignore', invalid='ignore'):
        design = np.column_stack([int_aif / tissue, np.ones_like(tissue)])
        ydata = tissue_integral(tac.times_in_minutes, tissue) / tissue
    coefs, r2, mpr, x, y, fitted = _run_regression('logan', design, ydata, tac.weights, ('slope', 'intercept'),
                                                   tstar_included_frames)
    return LinearFitResult(method='logan', coefficients=coefs, r2=r2, max_perc_resid=mpr, outcome_name='Vt',
                           outcome=coefs['slope'], included_frames=tstar_included_frames, xdata=x, ydata=y,
                           fitted=fitted)


def ref_logan_analysis(tac: TimeActivityCurve,
                       reference_tac: TimeActivityCurve,
                       k2prime: float,
                       tstar_included_frames: int) -> LinearFitResult:
    """
    Performs Logan analysis against a reference region.

    Args:
        tac (TimeActivityCurve): Target tissue TAC.
        reference_tac (TimeActivityCurve): Reference region TAC sampled at the same frames.
        k2prime (float): Efflux rate constant of the reference region, in 1/min.
        tstar_included_frames (int): Number of final frames used in the regression.

    Returns:
        LinearFitResult: With outcome :math:`BP_{ND}=DVR-1`; the slope is the DVR.
    """
    if k2prime is None or not k2prime > 0:
        raise InvalidParameterError(f"`k2prime` must be positive, got {k2prime}.")
    if not np.allclose(tac.times_in_minutes, reference_tac.times_in_minutes):
        raise InvalidParameterError("The target and reference TACs must be sampled at the same frame times.")
    tissue = tac.values
    ref = reference_tac.values
    with np.errstate(divide='ignore', invalid='ignore'):
        ref_term = tissue_integral(reference_tac.times_in_minutes, ref) + ref / k2prime
        design = np.column_stack([ref_term / tissue, np.ones_like(tissue)])
        ydata = tissue_integral(tac.times_in_minutes, tissue) / tissue
    coefs, r2, mpr, x, y, fitted = _run_regression('ref_logan', design, ydata, tac.weights, ('slope', 'intercept'),
                                                   tstar_included_frames)
    return LinearFitResult(method='ref_logan', coefficients=coefs, r2=r2, max_perc_resid=mpr, outcome_name='BPnd',
                           outcome=coefs['slope'] - 1.0, included_frames=tstar_included_frames, xdata=x, ydata=y,
                           fitted=fitted, derived={'DVR': coefs['slope']})


def ml_logan_analysis(tac: TimeActivityCurve,
                      input_function: InputFunction,
                      tstar_included_frames: int,
                      vb: float = 0.0,
                      inpshift: float = 0.0) -> LinearFitResult:
    """
    Performs multilinear Logan analysis, :math:`\\int C_T = V_T\\int C_P + bC_T`, which avoids the noise-induced bias
    of dividing by :math:`C_T`.

    Returns:
        LinearFitResult: With outcome :math:`V_T`.
    """
    tissue = _corrected_tissue(tac, input_function, vb, inpshift)
    int_aif, _ = input_integrals(input_function, tac.times_in_minutes, inpshift)
    design = np.column_stack([int_aif, tissue])
    ydata = tissue_integral(tac.times_in_minutes, tissue)
    coefs, r2, mpr, x, y, fitted = _run_regression('ml_logan', design, ydata, tac.weights, ('vt', 'b'),
                                                   tstar_included_frames)
    return LinearFitResult(method='ml_logan', coefficients=coefs, r2=r2, max_perc_resid=mpr, outcome_name='Vt',
                           outcome=coefs['vt'], included_frames=tstar_included_frames, xdata=x, ydata=y,
                           fitted=fitted)


def ma1_analysis(tac: TimeActivityCurve,
                 input_function: InputFunction,
                 tstar_included_frames: int,
                 vb: float = 0.0,
                 inpshift: float = 0.0) -> LinearFitResult:
    """
    Performs Ichise's multilinear analysis MA1.

    Returns:
        LinearFitResult: With outcome :math:`V_T=-\\gamma_1/\\gamma_2`.
    """
    tissue = _corrected_tissue(tac, input_function, vb, inpshift)
    int_aif, _ = input_integrals(input_function, tac.times_in_minutes, inpshift)
    design = np.column_stack([int_aif, tissue_integral(tac.times_in_minutes, tissue)])
    coefs, r2, mpr, x, y, fitted = _run_regression('ma1', design, tissue, tac.weights, ('gamma1', 'gamma2'),
                                                   tstar_included_frames)
    with np.errstate(divide='ignore', invalid='ignore'):
        vt = -coefs['gamma1'] / coefs['gamma2']
    return LinearFitResult(method='ma1', coefficients=coefs, r2=r2, max_perc_resid=mpr, outcome_name='Vt',
                           outcome=float(vt), included_frames=tstar_included_frames, xdata=x, ydata=y,
                           fitted=fitted)


def ma2_analysis(tac: TimeActivityCurve,
                 input_function: InputFunction,
                 tstar_included_frames: int,
                 vb: float = 0.0,
                 inpshift: float = 0.0) -> LinearFitResult:
    """
    Performs Ichise's multilinear analysis MA2, the linearization of the full 2TCM. All frames usually satisfy it, so
    ``tstar_included_frames`` is typically the total frame count.

    Returns:
        LinearFitResult: With outcome :math:`V_T` and the rate constants ``k1``, ``k2``, ``k3``, ``k4`` in
        ``derived``.
    """
    tissue = _corrected_tissue(tac, input_function, vb, inpshift)
    int_aif, int_int_aif = input_integrals(input_function, tac.times_in_minutes, inpshift)
    int_tissue = tissue_integral(tac.times_in_minutes, tissue)
    int_int_tissue = tissue_integral(tac.times_in_minutes, int_tissue)
    design = np.column_stack([int_int_aif, int_int_tissue, int_tissue, int_aif])
    coefs, r2, mpr, x, y, fitted = _run_regression('ma2', design, tissue, tac.weights,
                                                   ('gamma1', 'gamma2', 'gamma3', 'gamma4'), tstar_included_frames)
    g1, g2, g3, g4 = (coefs[f'gamma{i}'] for i in range(1, 5))
    with np.errstate(divide='ignore', invalid='ignore'):
        k2 = -g3 - g1 / g4
        k4 = -g2 / k2
        derived = {'k1': g4, 'k2': k2, 'k3': g1 / g4 - k4, 'k4': k4}
        vt = -g1 / g2
    return LinearFitResult(method='ma2', coefficients=coefs, r2=r2, max_perc_resid=mpr, outcome_name='Vt',
                           outcome=float(vt), included_frames=tstar_included_frames, xdata=x, ydata=y,
                           fitted=fitted, derived={k: float(v) for k, v in derived.items()})


ARTERIAL_METHODS = ('logan', 'ml_logan', 'ma1', 'ma2')
REFERENCE_METHODS = ('ref_logan',)


def get_graphical_analysis_method(method_name: str) -> Callable:
    """
    Function for obtaining the appropriate graphical analysis method.

    Args:
        method_name (str): One of ``'logan'``, ``'ref_logan'``, ``'ml_logan'``, ``'ma1'`` or ``'ma2'``.

    Returns:
        Callable: The analysis function.

    Raises:
        InvalidParameterError: If ``method_name`` is not supported.
    """
    methods = {'logan': logan_analysis,
               'ref_logan': ref_logan_analysis,
               'ml_logan': ml_logan_analysis,
               'ma1': ma1_analysis,
               'ma2': ma2_analysis}
    try:
        return methods[method_name]
    except KeyError:
        raise InvalidParameterError(f"Invalid method_name! Must be one of {list(methods)}. "
                                    f"Got {method_name}") from None


def run_graphical_analysis(method_name: str,
                           tac: TimeActivityCurve,
                           tstar_included_frames: int,
                           input_function: Union[None, InputFunction] = None,
                           reference_tac: Union[None, TimeActivityCurve] = None,
                           k2prime: Union[None, float] = None,
                           vb: float = 0.0,
                           inpshift: float = 0.0) -> LinearFitResult:
    """
    Runs any graphical method with the arguments it needs.

    Raises:
        InvalidParameterError: If the method's input (input function, or reference TAC and ``k2prime``) is missing.
    """
    func = get_graphical_analysis_method(method_name)
    if method_name in REFERENCE_METHODS:
        if reference_tac is None:
            raise InvalidParameterError(f"{method_name} needs a reference TAC.")
        return func(tac=tac, reference_tac=reference_tac, k2prime=k2prime,
                    tstar_included_frames=tstar_included_frames)
    if input_function is None:
        raise InvalidParameterError(f"{method_name} needs an input function.")
    return func(tac=tac, input_function=input_function, tstar_included_frames=tstar_included_frames, vb=vb,
                inpshift=inpshift)
