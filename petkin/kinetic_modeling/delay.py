"""
Estimation of the delay between the blood-sampling and scanner clocks.

The delay is the ``inpshift`` parameter of a compartment-model fit, optimized jointly with the rate constants. Noisy
late frames can destabilize the estimate, so the fit is typically restricted to the early frames with
``frame_window``. The estimated delay is then held fixed in the fits of all other regions of the session:

.. code-block:: python

    from petkin.kinetic_modeling.delay import estimate_delay
    from petkin.kinetic_modeling.tac_fitting import fit_2tcm

    delay = estimate_delay(whole_brain_tac, inp, model='1tcm', frame_window=(0, 20))
    results = {name: fit_2tcm(tac, inp, frozen_params=delay.frozen_params()) for name, tac in region_tacs.items()}

"""
import logging
from dataclasses import dataclass
from typing import Dict, Tuple, Union

import numpy as np

from ..input_function.interpolation import InputFunction
from ..multistart import MultistartConfig
from ..utils.errors import InvalidParameterError
from ..utils.time_activity_curve import TimeActivityCurve
from .tac_fitting import CompartmentModelFitter, FitResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelayEstimate:
    """Estimated delay and the fit it came from.

    Attributes:
        inpshift (float): Delay of the input function in minutes.
        fit (FitResult): The joint compartment-model fit.
    """
    inpshift: float
    fit: FitResult

    @property
    def relative_std_err(self) -> float:
        return self.fit.param_se.get('inpshift', np.nan)

    def frozen_params(self) -> Dict[str, float]:
        """``{'inpshift': value}`` for pinning the delay in later fits."""
        return {'inpshift': self.inpshift}


def estimate_delay(tac: TimeActivityCurve,
                   input_function: InputFunction,
                   model: str = '1tcm',
                   frame_window: Union[None, Tuple[int, int]] = None,
                   bounds: Union[None, Dict[str, Tuple[float, float, float]]] = None,
                   multistart: Union[None, MultistartConfig] = None,
                   frozen_params: Union[None, Dict[str, float]] = None,
                   resample_num: int = 2048) -> DelayEstimate:
    """
    Estimates the input-function delay by fitting a compartment model with ``inpshift`` free.

    Args:
        tac (TimeActivityCurve): Tissue TAC, usually a large region such as whole brain.
        input_function (InputFunction): Input function.
        model (str): Compartment model used for the joint fit.
        frame_window (tuple[int, int], optional): Frames ``[start, end)`` used, e.g. the early frames only.
        bounds (dict, optional): ``(initial, lower, upper)`` rows overriding the defaults, including ``inpshift``.
        multistart (MultistartConfig, optional): Use multi-start optimization.
        frozen_params (dict, optional): Other parameters to hold fixed. ``inpshift`` cannot be frozen here.
        resample_num (int): Number of points of the convolution grid.

    Returns:
        DelayEstimate: The delay and the joint fit.

    Raises:
        InvalidParameterError: If ``frozen_params`` pins ``inpshift``.
    """
    frozen = dict(frozen_params or {})
    if 'inpshift' in frozen:
        raise InvalidParameterError("`inpshift` is the estimated parameter and cannot be frozen.")
    fitter = CompartmentModelFitter(tac=tac, input_function=input_function, model=model, fit_bounds=bounds,
                                    frozen_params=frozen, frame_window=frame_window, multistart=multistart,
                                    resample_num=resample_num)
    fit = fitter.run_fit()
    logger.info("Estimated input delay of %.4f min with %s on %d frames.", fit.params['inpshift'], fitter.model,
                len(fitter.tac))
    return DelayEstimate(inpshift=fit.params['inpshift'], fit=fit)
