r"""
Continuous input function resolved from the model slots of a :class:`~petkin.input_function.measurement.Measurement`.

Each query resolves the requested quantity through the slot currently active for it:

* ``INTERPOLATE``: linear interpolation of the raw samples, held constant before the first and after the last sample;
* ``FIT``: the stored fitted curve evaluated at the query times;
* ``EXTERNAL``: the stored external values, linearly interpolated.

When interpolating, quantities that were not measured directly are composed from the others:

* whole blood: measured blood, else measured plasma times the blood-to-plasma ratio;
* plasma: measured plasma, else whole blood divided by the blood-to-plasma ratio;
* parent fraction and blood-to-plasma ratio: one when not measured;
* AIF (metabolite-corrected plasma): plasma times parent fraction.

The parent fraction is always clipped to :math:`[0, 1]`. Nothing is cached; every query reflects the measurement's
current slots.

"""
import logging
from typing import Tuple, Union

import numpy as np
import pandas as pd

from ..utils.errors import InsufficientDataError, InvalidParameterError
from .measurement import Measurement, Quantity, SampleSeries, SlotMethod

logger = logging.getLogger(__name__)


def _check_query_times(query_times) -> np.ndarray:
    query_times = np.asarray(query_times, float)
    if not np.all(np.isfinite(query_times)):
        raise InvalidParameterError("Query times must be finite.")
    return query_times


def _interp_series(series: SampleSeries, query_times: np.ndarray) -> np.ndarray:
    return np.interp(query_times, series.times, series.values)


class InputFunction:
    """
    Queryable blood, plasma, parent-fraction, BPR and AIF curves of one measurement.

    Example:

        .. code-block:: python

            from petkin.input_function.interpolation import InputFunction
            from petkin.input_function.measurement import Quantity

            inp = InputFunction(measurement)
            aif = inp.resolve(Quantity.AIF, np.linspace(0, 90, 901))

    Args:
        measurement (Measurement): The measurement to resolve from.
    """
    def __init__(self, measurement: Measurement):
        self.measurement = measurement

    def __repr__(self):
        methods = {q.value: self.measurement.slot(q).method.value for q in Quantity}
        return f"InputFunction({methods})"

    @classmethod
    def from_arrays(cls,
                    times: np.ndarray,
                    aif: np.ndarray,
                    blood: Union[None, np.ndarray] = None) -> 'InputFunction':
        """
        Builds an input function directly from a metabolite-corrected plasma curve and, optionally, whole blood on
        the same time grid.
        """
        blood_arrays = None if blood is None else (times, blood)
        return cls(Measurement.from_arrays(plasma=(times, aif), blood=blood_arrays))

    def resolve(self, quantity: Union[Quantity, str], query_times: np.ndarray) -> np.ndarray:
        """
        Evaluates ``quantity`` at ``query_times`` through the currently active slot.

        Args:
            quantity (Quantity or str): Quantity to evaluate.
            query_times (np.ndarray): Times in minutes.

        Returns:
            np.ndarray: Values at ``query_times``.

        Raises:
            InvalidParameterError: If a query time is not finite.
            InsufficientDataError: If the measurement has no data the quantity can be derived from.
        """
        quantity = Quantity(quantity)
        query_times = _check_query_times(query_times)
        slot = self.measurement.slot(quantity)
        if slot.method is SlotMethod.FIT:
            vals = slot.fit(query_times)
        elif slot.method is SlotMethod.EXTERNAL:
            vals = slot.external(query_times)
        else:
            vals = self._interpolate(quantity, query_times)
        if quantity is Quantity.PARENT_FRACTION:
            vals = np.clip(vals, 0.0, 1.0)
        return np.asarray(vals, float)

    def resolve_shifted(self, quantity: Union[Quantity, str], query_times: np.ndarray, shift: float) -> np.ndarray:
        """Evaluates ``quantity`` at ``query_times - shift``, i.e. the curve delayed by ``shift`` minutes."""
        return self.resolve(quantity, _check_query_times(query_times) - shift)

    def _interpolate(self, quantity: Quantity, query_times: np.ndarray) -> np.ndarray:
        meas = self.measurement
        raw = meas.raw_series(quantity)
        if quantity is Quantity.AIF:
            return self.resolve(Quantity.PLASMA, query_times) * self.resolve(Quantity.PARENT_FRACTION, query_times)
        if raw is not None:
            return _interp_series(raw, query_times)
        if quantity in (Quantity.PARENT_FRACTION, Quantity.BPR):
            return np.ones_like(query_times)
        if quantity is Quantity.BLOOD:
            plasma = meas.raw_series(Quantity.PLASMA)
            if plasma is None:
                raise InsufficientDataError("Whole blood cannot be resolved: no blood or plasma samples.")
            return _interp_series(plasma, query_times) * self.resolve(Quantity.BPR, query_times)
        blood = self.resolve(Quantity.BLOOD, query_times)
        with np.errstate(divide='ignore', invalid='ignore'):
            return blood / self.resolve(Quantity.BPR, query_times)

    def aif_samples(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Metabolite-corrected plasma at the plasma sample times, the data AIF models are fit to.

        Returns:
            tuple[np.ndarray, np.ndarray, np.ndarray]: Times, plasma times resolved parent fraction, and weights.

        Raises:
            InsufficientDataError: If the measurement has no plasma samples.
        """
        plasma = self.measurement.raw_series(Quantity.PLASMA)
        if plasma is None:
            raise InsufficientDataError("AIF samples need measured plasma.")
        parent = self.resolve(Quantity.PARENT_FRACTION, plasma.times)
        return plasma.times, plasma.values * parent, plasma.weights

    def to_table(self, query_times: np.ndarray) -> pd.DataFrame:
        """
        Evaluates every quantity at ``query_times``.

        Quantities that cannot be resolved from the measurement are filled with NaN.

        Returns:
            pd.DataFrame: Columns ``time`` and one per :class:`Quantity`.
        """
        query_times = _check_query_times(query_times)
        table = {'time': query_times}
        for quantity in Quantity:
            try:
                table[quantity.value] = self.resolve(quantity, query_times)
            except InsufficientDataError as err:
                logger.debug("Skipping %s in table: %s", quantity.value, err)
                table[quantity.value] = np.full_like(query_times, np.nan)
        return pd.DataFrame(table)
