"""
This module provides functionalities for fitting Tissue Compartment Models (TCM) to Time Activity Curves (TAC) against
an arterial input function.

It includes:
    - :class:`CompartmentModelFitter`: fits the 1TCM, the serial 2TCM or the 2TCM1k to a TAC. The input function is
      re-interpolated onto a grid shifted by the delay parameter ``inpshift`` at every model evaluation, convolved with
      the model's impulse response, and sampled at the frame times.
    - :class:`FitResult`: micro-parameters, derived macro-parameters, relative standard errors and fit diagnostics.
    - :func:`fit_1tcm`, :func:`fit_2tcm` and :func:`fit_2tcm1k`: convenience wrappers.
    - :class:`FitTCMToTAC`: file-based analysis that writes a JSON properties file, used by the command line interface.

Parameter bounds are given per parameter as ``(initial, lower, upper)``. Any parameter, including ``vb`` and
``inpshift``, can be held fixed through ``frozen_params``.

See Also:
    * :mod:`petkin.kinetic_modeling.tcms_as_convolutions`
    * :mod:`petkin.input_function.interpolation`

"""
import json
import logging
import os
import warnings
from dataclasses import dataclass
from typing import Dict, Tuple, Union

import numpy as np

from ..input_function.interpolation import InputFunction
from ..input_function.measurement import Quantity
from ..input_function.model_selection import information_criteria
from ..multistart import MultistartConfig, MultistartResult, curve_fit_with_status, multistart_curve_fit
from ..utils.errors import BoundaryHitWarning, InsufficientDataError, InvalidParameterError, NonConvergentFitError
from ..utils.time_activity_curve import TimeActivityCurve, safe_load_tac
from . import tcms_as_convolutions as pet_tcms

logger = logging.getLogger(__name__)

MODEL_PARAMS = {'1tcm': ('k1', 'k2', 'vb', 'inpshift'),
                '2tcm': ('k1', 'k2', 'k3', 'k4', 'vb', 'inpshift'),
                '2tcm1k': ('k1', 'k2', 'k3', 'k4', 'vb', 'kb', 'inpshift')}

DEFAULT_BOUNDS = {'k1': (0.1, 1.0e-4, 1.0),
                  'k2': (0.1, 1.0e-4, 1.0),
                  'k3': (0.1, 1.0e-4, 1.0),
                  'k4': (0.1, 1.0e-4, 1.0),
                  'vb': (0.05, 0.0, 0.5),
                  'kb': (0.01, 0.0, 1.0),
                  'inpshift': (0.0, -1.0, 1.0)}


def validated_tcm(compartment_model: str) -> str:
    """Normalizes a model name such as ``'2TCM'`` and checks that it is supported."""
    tcm = compartment_model.lower().replace(' ', '').replace('-', '')
    if tcm not in MODEL_PARAMS:
        raise InvalidParameterError(f"Invalid compartment model: {compartment_model}. Must be one of "
                                    f"{list(MODEL_PARAMS)}.")
    return tcm


def calc_model_tac(model: str,
                   grid: np.ndarray,
                   plasma: np.ndarray,
                   blood: np.ndarray,
                   params: Dict[str, float]) -> np.ndarray:
    """Evaluates a compartment model on an evenly spaced grid starting at zero. ``inpshift`` is ignored."""
    if model == '1tcm':
        return pet_tcms.calc_1tcm_tac(grid, plasma, blood, k1=params['k1'], k2=params['k2'], vb=params['vb'])
    if model == '2tcm':
        return pet_tcms.calc_2tcm_tac(grid, plasma, blood, k1=params['k1'], k2=params['k2'], k3=params['k3'],
                                      k4=params['k4'], vb=params['vb'])
    return pet_tcms.calc_2tcm1k_tac(grid, plasma, blood, k1=params['k1'], k2=params['k2'], k3=params['k3'],
                                    k4=params['k4'], vb=params['vb'], kb=params['kb'])


def shifted_input_on_grid(input_function: InputFunction,
                          grid: np.ndarray,
                          inpshift: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Re-interpolates the AIF and whole blood onto ``grid`` delayed by ``inpshift`` minutes.

    Grid points that fall outside the sampled range after shifting are padded with the first or last value.
    """
    aif = input_function.resolve_shifted(Quantity.AIF, grid, inpshift)
    blood = input_function.resolve_shifted(Quantity.BLOOD, grid, inpshift)
    return aif, blood


def simulate_tac(model: str,
                 tac_times: np.ndarray,
                 input_function: InputFunction,
                 params: Dict[str, float],
                 resample_num: int = 2048) -> np.ndarray:
    """
    Simulates a PET TAC at ``tac_times`` with the same forward model used by :class:`CompartmentModelFitter`.

    Args:
        model (str): ``'1tcm'``, ``'2tcm'`` or ``'2tcm1k'``.
        tac_times (np.ndarray): Frame mid-times in minutes.
        input_function (InputFunction): Input function.
        params (dict): Values of every model parameter. ``inpshift`` defaults to 0.
        resample_num (int): Number of points of the convolution grid.

    Returns:
        np.ndarray: Simulated activity at ``tac_times``.
    """
    model = validated_tcm(model)
    params = {'inpshift': 0.0, **params}
    missing = set(MODEL_PARAMS[model]) - set(params)
    if missing:
        raise InvalidParameterError(f"Missing parameters for {model}: {sorted(missing)}.")
    tac_times = np.asarray(tac_times, float)
    grid = np.linspace(0.0, tac_times[-1], resample_num)
    aif, blood = shifted_input_on_grid(input_function, grid, params['inpshift'])
    return np.interp(tac_times, grid, calc_model_tac(model, grid, aif, blood, params))


def calc_macro_params(model: str, params: Dict[str, float]) -> Dict[str, float]:
    r"""
    Derives macro-parameters from the micro-parameters.

    * 1TCM: :math:`V_T = K_1/k_2`.
    * 2TCM and 2TCM1k: :math:`V_{ND}=K_1/k_2`. With :math:`k_4>0` also :math:`V_S=K_1k_3/(k_2k_4)`,
      :math:`V_T=V_{ND}+V_S` and :math:`BP_{ND}=k_3/k_4`; with :math:`k_4=0` the net influx
      :math:`K_i=K_1k_3/(k_2+k_3)`.
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        k1, k2 = params['k1'], params['k2']
        if model == '1tcm':
            return {'Vt': k1 / k2}
        k3, k4 = params['k3'], params['k4']
        macro = {'Vnd': k1 / k2}
        if k4 > 0:
            macro['Vs'] = k1 * k3 / (k2 * k4)
            macro['Vt'] = macro['Vnd'] + macro['Vs']
            macro['BPnd'] = k3 / k4
        else:
            macro['Ki'] = k1 * k3 / (k2 + k3)
        return macro


@dataclass(frozen=True)
class FitResult:
    """Result of a compartment-model fit.

    Attributes:
        model (str): Fitted model.
        params (dict): All parameter values, fitted and frozen.
        param_se (dict): Standard errors of the fitted parameters as a fraction of their values.
        macro_params (dict): Derived macro-parameters.
        macro_param_se (dict): Relative standard errors of the macro-parameters, by the delta method.
        free_params (tuple): Names of the fitted parameters, in covariance order.
        covariance (np.ndarray): Covariance of the fitted parameters.
        bounds (dict): ``(initial, lower, upper)`` of every fitted parameter.
        tac (TimeActivityCurve): The frames the model was fit to.
        fitted_tac (np.ndarray): Model activity at the frame times.
        shifted_input (np.ndarray): ``[times, aif, blood]`` on the convolution grid at the fitted delay.
        wrss (float): Weighted residual sum of squares.
        converged (bool): Optimizer convergence status.
        boundary_hit (bool): Whether a fitted parameter ended on its bound.
        multistart (MultistartResult, optional): Attempt table of a multi-start fit.
    """
    model: str
    params: Dict[str, float]
    param_se: Dict[str, float]
    macro_params: Dict[str, float]
    macro_param_se: Dict[str, float]
    free_params: Tuple[str, ...]
    covariance: np.ndarray
    bounds: Dict[str, Tuple[float, float, float]]
    tac: TimeActivityCurve
    fitted_tac: np.ndarray
    shifted_input: np.ndarray
    wrss: float
    converged: bool
    boundary_hit: bool
    multistart: Union[None, MultistartResult] = None

    @property
    def residuals(self) -> np.ndarray:
        return self.tac.values - self.fitted_tac

    @property
    def shifted_tac(self) -> np.ndarray:
        """The ``[times, values]`` pair the model was fit to."""
        return np.asarray([self.tac.times_in_minutes, self.tac.values])

    @property
    def n_obs(self) -> int:
        return int(np.count_nonzero(self.tac.weights > 0))

    @property
    def aic(self) -> float:
        return information_criteria(self.wrss, self.n_obs, len(self.free_params))[0]

    @property
    def bic(self) -> float:
        return information_criteria(self.wrss, self.n_obs, len(self.free_params))[1]

    def to_props(self) -> dict:
        """JSON-serializable summary of the fit."""
        def pretty(vals: dict) -> dict:
            return {name: float(np.round(val, 6)) for name, val in vals.items()}

        return {'TissueCompartmentModel': self.model,
                'FitProperties': {'FitValues': pretty(self.params),
                                  'FitStdErrRelative': pretty(self.param_se),
                                  'MacroParameters': pretty(self.macro_params),
                                  'MacroStdErrRelative': pretty(self.macro_param_se),
                                  'Bounds': {name: {'initial': float(b[0]), 'lo': float(b[1]), 'hi': float(b[2])}
                                             for name, b in self.bounds.items()},
                                  'WRSS': float(self.wrss),
                                  'AIC': float(self.aic),
                                  'BIC': float(self.bic),
                                  'Converged': bool(self.converged),
                                  'BoundaryHit': bool(self.boundary_hit),
                                  'FrameCount': len(self.tac)}}


class CompartmentModelFitter(object):
    r"""
    Fits a tissue compartment model to a TAC.

    At every model evaluation the input function is resolved on an evenly spaced grid from zero to the last frame
    time, delayed by the current ``inpshift``, convolved with the model's impulse response and interpolated at the
    frame mid-times. Residuals are weighted by the frame weights of the TAC (``sigma = 1/sqrt(w)`` for
    :func:`scipy.optimize.curve_fit`).

    Example:

        .. code-block:: python

            from petkin.kinetic_modeling.tac_fitting import CompartmentModelFitter

            fitter = CompartmentModelFitter(tac=tac, input_function=inp, model='2tcm',
                                            frozen_params={'inpshift': 0.0})
            result = fitter.run_fit()
            print(result.params, result.macro_params['Vt'])

    Args:
        tac (TimeActivityCurve): Tissue TAC with frame weights.
        input_function (InputFunction): Input function.
        model (str): ``'1tcm'``, ``'2tcm'`` or ``'2tcm1k'``.
        fit_bounds (np.ndarray or dict, optional): Either an array of shape ``(n_params, 3)`` with rows
            ``(initial, lower, upper)`` in the order of :data:`MODEL_PARAMS`, or a dict of such rows by parameter
            name overriding the defaults.
        frozen_params (dict, optional): Parameters held fixed, e.g. ``{'vb': 0.0}`` or ``{'inpshift': 0.2}``.
        frame_window (tuple[int, int], optional): Frames ``[start, end)`` used for the fit.
        multistart (MultistartConfig, optional): Use multi-start optimization.
        resample_num (int): Number of points of the convolution grid.
        max_iters (int): Maximum number of function evaluations per optimization.
    """
    def __init__(self,
                 tac: TimeActivityCurve,
                 input_function: InputFunction,
                 model: str = '2tcm',
                 fit_bounds: Union[None, np.ndarray, Dict[str, Tuple[float, float, float]]] = None,
                 frozen_params: Union[None, Dict[str, float]] = None,
                 frame_window: Union[None, Tuple[int, int]] = None,
                 multistart: Union[None, MultistartConfig] = None,
                 resample_num: int = 2048,
                 max_iters: int = 2500):
        self.model: str = validated_tcm(model)
        self.param_names: Tuple[str, ...] = MODEL_PARAMS[self.model]
        self.input_function = input_function
        self.tac: TimeActivityCurve = tac if frame_window is None else tac.frame_window(*frame_window)
        self.multistart = multistart
        self.max_func_evals: int = max_iters
        if resample_num < 16:
            raise InvalidParameterError("`resample_num` must be at least 16.")
        self.resample_times: np.ndarray = np.linspace(0.0, self.tac.times_in_minutes[-1], resample_num)

        self.frozen_params: Dict[str, float] = dict(frozen_params or {})
        unknown = set(self.frozen_params) - set(self.param_names)
        if unknown:
            raise InvalidParameterError(f"Unknown parameters for {self.model}: {sorted(unknown)}.")
        self.free_params: Tuple[str, ...] = tuple(p for p in self.param_names if p not in self.frozen_params)
        if not self.free_params:
            raise InvalidParameterError("At least one parameter must be free.")
        self.bounds: Dict[str, Tuple[float, float, float]] = self.set_bounds_and_initial_guesses(fit_bounds)

    def set_bounds_and_initial_guesses(self, fit_bounds) -> Dict[str, Tuple[float, float, float]]:
        """
        Resolves the ``(initial, lower, upper)`` row of every free parameter.

        Raises:
            InvalidParameterError: For a wrongly shaped array, unknown names, or rows that are not ordered
                ``lower <= initial <= upper`` with ``lower < upper``.
        """
        bounds = {name: DEFAULT_BOUNDS[name] for name in self.param_names}
        if isinstance(fit_bounds, dict):
            unknown = set(fit_bounds) - set(self.param_names)
            if unknown:
                raise InvalidParameterError(f"Unknown parameters in bounds: {sorted(unknown)}.")
            bounds.update({name: tuple(map(float, row)) for name, row in fit_bounds.items()})
        elif fit_bounds is not None:
            fit_bounds = np.asarray(fit_bounds, float)
            if fit_bounds.shape != (len(self.param_names), 3):
                raise InvalidParameterError(f"Fit bounds has the wrong shape. For each of {self.param_names} we "
                                            f"require the tuple: `(initial, lower, upper)`.")
            bounds = {name: tuple(row) for name, row in zip(self.param_names, fit_bounds)}
        for name in self.free_params:
            initial, lo, hi = bounds[name]
            if not (lo < hi and lo <= initial <= hi):
                raise InvalidParameterError(f"Bounds of {name} must satisfy lower <= initial <= upper, lower < upper.")
        return {name: bounds[name] for name in self.free_params}

    def all_params(self, free_vals) -> Dict[str, float]:
        params = dict(self.frozen_params)
        params.update(zip(self.free_params, map(float, free_vals)))
        return params

    def shifted_input(self, inpshift: float) -> np.ndarray:
        """``[times, aif, blood]`` on the convolution grid, delayed by ``inpshift``."""
        aif, blood = shifted_input_on_grid(self.input_function, self.resample_times, inpshift)
        return np.asarray([self.resample_times, aif, blood])

    def model_tac(self, params: Dict[str, float]) -> np.ndarray:
        """Model activity at the frame times for a full parameter set."""
        _, aif, blood = self.shifted_input(params['inpshift'])
        pet = calc_model_tac(self.model, self.resample_times, aif, blood, params)
        return np.interp(self.tac.times_in_minutes, self.resample_times, pet)

    def fitting_func(self, x: np.ndarray, *params) -> np.ndarray:
        return self.model_tac(self.all_params(params))

    def _macro_se(self, free_vals: np.ndarray, covariance: np.ndarray) -> Dict[str, float]:
        macro = calc_macro_params(self.model, self.all_params(free_vals))
        names = list(macro)
        grads = np.zeros((len(names), len(free_vals)))
        for j, val in enumerate(free_vals):
            step = 1e-6 * max(abs(val), 1e-6)
            hi_vals, lo_vals = np.array(free_vals, float), np.array(free_vals, float)
            hi_vals[j] += step
            lo_vals[j] -= step
            macro_hi = calc_macro_params(self.model, self.all_params(hi_vals))
            macro_lo = calc_macro_params(self.model, self.all_params(lo_vals))
            for i, name in enumerate(names):
                grads[i, j] = (macro_hi.get(name, np.nan) - macro_lo.get(name, np.nan)) / (2.0 * step)
        with np.errstate(invalid='ignore', divide='ignore'):
            variances = np.einsum('ij,jk,ik->i', grads, covariance, grads)
            return {name: float(np.sqrt(var) / abs(macro[name])) for name, var in zip(names, variances)}

    def run_fit(self) -> FitResult:
        """
        Runs the optimization.

        Returns:
            FitResult: The fit. A fit that converged on a parameter bound is returned with ``boundary_hit=True`` and
            a :class:`BoundaryHitWarning`.

        Raises:
            InsufficientDataError: If there are fewer weighted frames than free parameters.
            NonConvergentFitError: If the optimizer failed, or no multi-start attempt was acceptable.
        """
        n_obs = int(np.count_nonzero(self.tac.weights > 0))
        if n_obs < len(self.free_params):
            raise InsufficientDataError(f"{self.model} has {len(self.free_params)} free parameters but only "
                                        f"{n_obs} weighted frames.")
        initial = np.asarray([self.bounds[p][0] for p in self.free_params])
        lo = np.asarray([self.bounds[p][1] for p in self.free_params])
        hi = np.asarray([self.bounds[p][2] for p in self.free_params])
        xdata = self.tac.times_in_minutes

        ms_result = None
        if self.multistart is None:
            outcome = curve_fit_with_status(f=self.fitting_func, xdata=xdata, ydata=self.tac.values, p0=initial,
                                            bounds_lo=lo, bounds_hi=hi, weights=self.tac.weights,
                                            max_func_evals=self.max_func_evals)
            if not outcome.converged:
                raise NonConvergentFitError(f"{self.model} fit did not converge: {outcome.message}")
            if outcome.boundary_hit:
                on_bound = [p for p, val, l, h in zip(self.free_params, outcome.params, lo, hi)
                            if np.isclose(val, l) or np.isclose(val, h)]
                warnings.warn(f"{self.model} fit converged with parameters on their bounds: {on_bound}. Consider "
                              f"multi-start fitting or different bounds.", BoundaryHitWarning, stacklevel=2)
        else:
            ms_result = multistart_curve_fit(f=self.fitting_func, xdata=xdata, ydata=self.tac.values,
                                             bounds_lo=lo, bounds_hi=hi, iterations=self.multistart.iterations,
                                             weights=self.tac.weights, seed=self.multistart.seed,
                                             start_lo=self.multistart.start_lo, start_hi=self.multistart.start_hi,
                                             max_func_evals=self.max_func_evals)
            outcome = ms_result.best

        params = self.all_params(outcome.params)
        with np.errstate(divide='ignore', invalid='ignore'):
            rel_se = np.sqrt(np.diag(outcome.covariance)) / np.abs(outcome.params)
        logger.info("%s fit: %s (wrss=%.4g, boundary_hit=%s)", self.model,
                    {k: round(v, 5) for k, v in params.items()}, outcome.wrss, outcome.boundary_hit)
        return FitResult(model=self.model,
                         params={p: params[p] for p in self.param_names},
                         param_se=dict(zip(self.free_params, map(float, rel_se))),
                         macro_params=calc_macro_params(self.model, params),
                         macro_param_se=self._macro_se(outcome.params, outcome.covariance),
                         free_params=self.free_params,
                         covariance=outcome.covariance,
                         bounds=self.bounds,
                         tac=self.tac,
                         fitted_tac=self.model_tac(params),
                         shifted_input=self.shifted_input(params['inpshift']),
                         wrss=outcome.wrss,
                         converged=outcome.converged,
                         boundary_hit=outcome.boundary_hit,
                         multistart=ms_result)


def fit_1tcm(tac: TimeActivityCurve, input_function: InputFunction, **kwargs) -> FitResult:
    """Fits the 1TCM. Keyword arguments are passed to :class:`CompartmentModelFitter`."""
    return CompartmentModelFitter(tac=tac, input_function=input_function, model='1tcm', **kwargs).run_fit()


def fit_2tcm(tac: TimeActivityCurve, input_function: InputFunction, **kwargs) -> FitResult:
    """Fits the serial 2TCM. Keyword arguments are passed to :class:`CompartmentModelFitter`."""
    return CompartmentModelFitter(tac=tac, input_function=input_function, model='2tcm', **kwargs).run_fit()


def fit_2tcm1k(tac: TimeActivityCurve, input_function: InputFunction, **kwargs) -> FitResult:
    """Fits the 2TCM1k. Keyword arguments are passed to :class:`CompartmentModelFitter`."""
    return CompartmentModelFitter(tac=tac, input_function=input_function, model='2tcm1k', **kwargs).run_fit()


class FitTCMToTAC(object):
    """
    Fits a compartment model to a TAC file against an input function file and saves the results as JSON.

    The input function file has the columns time, metabolite-corrected plasma activity and, optionally, whole-blood
    activity. The TAC file has the columns time, activity and, optionally, frame weights. Times of 300 or more are
    taken to be seconds.

    The properties are written to ``{output_directory}/{output_filename_prefix}_analysis-{model}_props.json``.
    """
    def __init__(self,
                 input_tac_path: str,
                 roi_tac_path: str,
                 output_directory: str,
                 output_filename_prefix: str,
                 compartment_model: str,
                 parameter_bounds: Union[None, np.ndarray, dict] = None,
                 frozen_params: Union[None, Dict[str, float]] = None,
                 frame_window: Union[None, Tuple[int, int]] = None,
                 multistart: Union[None, MultistartConfig] = None,
                 resample_num: int = 2048,
                 max_func_iters: int = 2500):
        self.input_tac_path: str = os.path.abspath(input_tac_path)
        self.roi_tac_path: str = os.path.abspath(roi_tac_path)
        self.output_directory: str = os.path.abspath(output_directory)
        self.output_filename_prefix: str = output_filename_prefix
        self.compartment_model: str = validated_tcm(compartment_model)
        self.bounds = parameter_bounds
        self.frozen_params = frozen_params
        self.frame_window = frame_window
        self.multistart = multistart
        self.tac_resample_num: int = resample_num
        self.max_func_iters: int = max_func_iters
        self.analysis_props: dict = self.init_analysis_props()
        self.fit_results: Union[None, FitResult] = None
        self._has_analysis_been_run: bool = False

    def init_analysis_props(self) -> dict:
        return {'FilePathPTAC': self.input_tac_path,
                'FilePathTTAC': self.roi_tac_path,
                'TissueCompartmentModel': self.compartment_model,
                'FrozenParameters': dict(self.frozen_params or {}),
                'FrameWindow': None if self.frame_window is None else list(self.frame_window),
                'MultistartIterations': None if self.multistart is None else self.multistart.iterations,
                'MultistartSeed': None if self.multistart is None else self.multistart.seed,
                'FitProperties': {'ResampleNum': self.tac_resample_num,
                                  'MaxIterations': self.max_func_iters}}

    def run_analysis(self) -> FitResult:
        p_tac = safe_load_tac(self.input_tac_path)
        blood = p_tac[2] if len(p_tac) > 2 else None
        input_function = InputFunction.from_arrays(times=p_tac[0], aif=p_tac[1], blood=blood)
        tac = TimeActivityCurve.from_file(self.roi_tac_path)
        fitter = CompartmentModelFitter(tac=tac, input_function=input_function, model=self.compartment_model,
                                        fit_bounds=self.bounds, frozen_params=self.frozen_params,
                                        frame_window=self.frame_window, multistart=self.multistart,
                                        resample_num=self.tac_resample_num, max_iters=self.max_func_iters)
        self.fit_results = fitter.run_fit()
        props = self.fit_results.to_props()
        self.analysis_props['FitProperties'].update(props['FitProperties'])
        self._has_analysis_been_run = True
        return self.fit_results

    def save_analysis(self) -> str:
        if not self._has_analysis_been_run:
            raise RuntimeError("'run_analysis' method must be run before running this method.")
        os.makedirs(self.output_directory, exist_ok=True)
        file_name_prefix = os.path.join(self.output_directory,
                                        f"{self.output_filename_prefix}_analysis-{self.compartment_model}")
        analysis_props_file = f"{file_name_prefix}_props.json"
        with open(analysis_props_file, 'w') as f:
            json.dump(obj=self.analysis_props, fp=f, indent=4)
        logger.info("Saved analysis properties to %s", analysis_props_file)
        return analysis_props_file
