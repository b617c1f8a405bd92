"""
Immutable record of the blood data of one PET measurement.

A :class:`Measurement` holds the raw sample series (whole blood, plasma, parent fraction and blood-to-plasma ratio),
a time shift between the blood and scanner clocks, and one :class:`ModelSlot` per derived quantity. A slot selects
how the quantity is resolved by :class:`~petkin.input_function.interpolation.InputFunction`:

* :attr:`SlotMethod.INTERPOLATE`: linear interpolation of the raw samples;
* :attr:`SlotMethod.FIT`: evaluation of a stored fitted curve;
* :attr:`SlotMethod.EXTERNAL`: externally computed values, interpolated in time.

Every processing step returns a new snapshot; nothing is modified in place, so a pristine baseline can be kept around
for comparison.

Example:

    .. code-block:: python

        import numpy as np
        from petkin.input_function.measurement import Measurement, Quantity, SlotMethod
        from petkin.input_function.curve_models import HillModel

        meas = Measurement.from_arrays(plasma=(t_p, plasma), parent_fraction=(t_pf, pf))
        pf_fit = HillModel().fit(*meas.raw_series(Quantity.PARENT_FRACTION).as_arrays())
        fitted_meas = meas.with_fit(Quantity.PARENT_FRACTION, pf_fit)
        baseline = fitted_meas.with_method(Quantity.PARENT_FRACTION, SlotMethod.INTERPOLATE)

"""
import enum
import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Tuple, Union

import numpy as np
import pandas as pd

from ..utils.errors import InvalidParameterError

logger = logging.getLogger(__name__)


class Quantity(enum.Enum):
    BLOOD = 'blood'
    PLASMA = 'plasma'
    PARENT_FRACTION = 'parent_fraction'
    BPR = 'bpr'
    AIF = 'aif'


class SlotMethod(enum.Enum):
    INTERPOLATE = 'interpolate'
    FIT = 'fit'
    EXTERNAL = 'external'


def _read_only(arr, dtype=float) -> np.ndarray:
    out = np.array(arr, dtype=dtype, copy=True)
    out.flags.writeable = False
    return out


@dataclass(frozen=True)
class SampleSeries:
    """Samples of one quantity, sorted by time.

    Attributes:
        times (np.ndarray): Sample times in minutes.
        values (np.ndarray): Sample values.
        weights (np.ndarray): Non-negative weights. Defaults to ones.
        continuous (np.ndarray): ``True`` for samples from an automatic (continuous) sampler. Defaults to all
            ``False``; only meaningful for whole blood.
    """
    times: np.ndarray
    values: np.ndarray
    weights: np.ndarray = None
    continuous: np.ndarray = None

    def __post_init__(self):
        times = np.asarray(self.times, float)
        values = np.asarray(self.values, float)
        weights = np.ones_like(times) if self.weights is None else np.asarray(self.weights, float)
        continuous = np.zeros(times.shape, bool) if self.continuous is None else np.asarray(self.continuous, bool)
        if not (times.ndim == 1 and times.shape == values.shape == weights.shape == continuous.shape):
            raise InvalidParameterError("Sample times, values, weights and flags must be 1D arrays of equal length.")
        if len(times) == 0:
            raise InvalidParameterError("A sample series needs at least one sample.")
        if not (np.all(np.isfinite(times)) and np.all(np.isfinite(values))):
            raise InvalidParameterError("Sample times and values must be finite.")
        if np.any(weights < 0) or not np.all(np.isfinite(weights)):
            raise InvalidParameterError("Sample weights must be finite and non-negative.")
        order = np.argsort(times, kind='stable')
        object.__setattr__(self, 'times', _read_only(times[order]))
        object.__setattr__(self, 'values', _read_only(values[order]))
        object.__setattr__(self, 'weights', _read_only(weights[order]))
        object.__setattr__(self, 'continuous', _read_only(continuous[order], dtype=bool))

    def __len__(self):
        return len(self.times)

    def as_arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """``(times, values, weights)``, convenient for unpacking into a model's ``fit``."""
        return self.times, self.values, self.weights

    def shifted(self, shift: float) -> 'SampleSeries':
        if shift == 0.0:
            return self
        return replace(self, times=self.times + shift)


@dataclass(frozen=True)
class ExternalValues:
    """Externally computed values of a quantity, linearly interpolated (with edge hold) at query times."""
    times: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        series = SampleSeries(self.times, self.values)
        object.__setattr__(self, 'times', series.times)
        object.__setattr__(self, 'values', series.values)

    def __call__(self, query_times: np.ndarray) -> np.ndarray:
        return np.interp(query_times, self.times, self.values)


@dataclass(frozen=True)
class ModelSlot:
    """Active resolution method of a quantity and the payloads of every method.

    Switching the method keeps the payloads of the other methods.

    Attributes:
        method (SlotMethod): The active method.
        fit (FittedCurve, optional): Fitted curve, required when ``method`` is ``FIT``.
        external (ExternalValues, optional): External values, required when ``method`` is ``EXTERNAL``.
    """
    method: SlotMethod = SlotMethod.INTERPOLATE
    fit: object = None
    external: Union[None, ExternalValues] = None

    def __post_init__(self):
        method = SlotMethod(self.method)
        object.__setattr__(self, 'method', method)
        if method is SlotMethod.FIT and self.fit is None:
            raise InvalidParameterError("A slot cannot use the 'fit' method without a stored fit.")
        if method is SlotMethod.EXTERNAL and self.external is None:
            raise InvalidParameterError("A slot cannot use the 'external' method without stored external values.")


def _default_slots() -> Mapping[Quantity, ModelSlot]:
    return MappingProxyType({quantity: ModelSlot() for quantity in Quantity})


_SERIES_FIELDS = {Quantity.BLOOD: 'blood',
                  Quantity.PLASMA: 'plasma',
                  Quantity.PARENT_FRACTION: 'parent_fraction',
                  Quantity.BPR: 'bpr'}


@dataclass(frozen=True)
class Measurement:
    """Blood data of one PET measurement.

    Attributes:
        blood (SampleSeries, optional): Whole-blood activity.
        plasma (SampleSeries, optional): Plasma activity.
        parent_fraction (SampleSeries, optional): Fraction of plasma activity from the unmetabolized parent tracer.
        bpr (SampleSeries, optional): Blood-to-plasma ratio.
        time_shift (float): Minutes added to every raw sample time to align the blood clock with the scanner clock.
        slots (Mapping[Quantity, ModelSlot]): Resolution method per quantity.
    """
    blood: Union[None, SampleSeries] = None
    plasma: Union[None, SampleSeries] = None
    parent_fraction: Union[None, SampleSeries] = None
    bpr: Union[None, SampleSeries] = None
    time_shift: float = 0.0
    slots: Mapping[Quantity, ModelSlot] = field(default_factory=_default_slots)

    def __post_init__(self):
        if not np.isfinite(self.time_shift):
            raise InvalidParameterError("The time shift must be finite.")
        slots = {quantity: ModelSlot() for quantity in Quantity}
        slots.update({Quantity(q): slot for q, slot in self.slots.items()})
        object.__setattr__(self, 'slots', MappingProxyType(slots))
        object.__setattr__(self, 'time_shift', float(self.time_shift))

    @classmethod
    def from_arrays(cls,
                    blood: Union[None, Tuple[np.ndarray, np.ndarray]] = None,
                    plasma: Union[None, Tuple[np.ndarray, np.ndarray]] = None,
                    parent_fraction: Union[None, Tuple[np.ndarray, np.ndarray]] = None,
                    bpr: Union[None, Tuple[np.ndarray, np.ndarray]] = None,
                    blood_continuous: Union[None, np.ndarray] = None,
                    time_shift: float = 0.0) -> 'Measurement':
        """
        Builds a measurement from ``(times, values)`` or ``(times, values, weights)`` tuples.

        Args:
            blood (tuple, optional): Whole-blood samples.
            plasma (tuple, optional): Plasma samples.
            parent_fraction (tuple, optional): Parent-fraction samples.
            bpr (tuple, optional): Blood-to-plasma ratio samples.
            blood_continuous (np.ndarray, optional): Automatic-sampler flags for the blood samples.
            time_shift (float): Blood clock offset in minutes.

        Returns:
            Measurement: New measurement with every slot set to interpolation.
        """
        def to_series(arrays, continuous=None):
            return None if arrays is None else SampleSeries(*arrays, continuous=continuous)

        return cls(blood=to_series(blood, blood_continuous), plasma=to_series(plasma),
                   parent_fraction=to_series(parent_fraction), bpr=to_series(bpr), time_shift=time_shift)

    def slot(self, quantity: Union[Quantity, str]) -> ModelSlot:
        return self.slots[Quantity(quantity)]

    def raw_series(self, quantity: Union[Quantity, str]) -> Union[None, SampleSeries]:
        """Raw samples of ``quantity`` with the time shift applied, or ``None`` if not measured."""
        quantity = Quantity(quantity)
        if quantity is Quantity.AIF:
            return None
        series = getattr(self, _SERIES_FIELDS[quantity])
        return None if series is None else series.shifted(self.time_shift)

    def _with_slot(self, quantity: Quantity, slot: ModelSlot) -> 'Measurement':
        slots = dict(self.slots)
        slots[quantity] = slot
        return replace(self, slots=slots)

    def with_fit(self, quantity: Union[Quantity, str], fitted) -> 'Measurement':
        """New snapshot with ``fitted`` stored for ``quantity`` and the slot switched to ``FIT``."""
        quantity = Quantity(quantity)
        logger.debug("Storing %s fit for %s.", getattr(fitted.model, 'name', fitted.model), quantity.value)
        return self._with_slot(quantity, replace(self.slot(quantity), method=SlotMethod.FIT, fit=fitted))

    def with_external(self, quantity: Union[Quantity, str], times: np.ndarray, values: np.ndarray) -> 'Measurement':
        """New snapshot with external values stored for ``quantity`` and the slot switched to ``EXTERNAL``."""
        quantity = Quantity(quantity)
        external = ExternalValues(times=times, values=values)
        return self._with_slot(quantity, replace(self.slot(quantity), method=SlotMethod.EXTERNAL, external=external))

    def with_method(self, quantity: Union[Quantity, str], method: Union[SlotMethod, str]) -> 'Measurement':
        """
        New snapshot with the active method of ``quantity`` switched, keeping every stored payload.

        Raises:
            InvalidParameterError: If the method needs a payload that was never stored.
        """
        quantity = Quantity(quantity)
        return self._with_slot(quantity, replace(self.slot(quantity), method=SlotMethod(method)))

    def with_time_shift(self, time_shift: float) -> 'Measurement':
        return replace(self, time_shift=time_shift)

    def with_series(self, quantity: Union[Quantity, str], series: Union[None, SampleSeries]) -> 'Measurement':
        quantity = Quantity(quantity)
        if quantity is Quantity.AIF:
            raise InvalidParameterError("The AIF has no raw samples; store a fit or external values instead.")
        return replace(self, **{_SERIES_FIELDS[quantity]: series})

    def with_blood(self, series: SampleSeries) -> 'Measurement':
        return self.with_series(Quantity.BLOOD, series)


VALUE_COLUMNS = {Quantity.BLOOD: 'activity',
                 Quantity.PLASMA: 'activity',
                 Quantity.PARENT_FRACTION: 'parent_fraction',
                 Quantity.BPR: 'bpr'}


def _series_from_dataframe(table: pd.DataFrame, quantity: Quantity, time_scale: float) -> SampleSeries:
    value_col = VALUE_COLUMNS[quantity]
    missing = {'time', value_col} - set(table.columns)
    if missing:
        raise InvalidParameterError(f"{quantity.value} table is missing the columns {sorted(missing)}.")
    table = table.dropna(subset=['time', value_col])
    weights = table['weight'].to_numpy(float) if 'weight' in table.columns else None
    continuous = None
    if 'method' in table.columns:
        continuous = table['method'].astype(str).str.lower().isin(['continuous', 'automatic', 'auto']).to_numpy()
    return SampleSeries(times=table['time'].to_numpy(float) * time_scale, values=table[value_col].to_numpy(float),
                        weights=weights, continuous=continuous)


def measurement_from_dataframes(blood: Union[None, pd.DataFrame] = None,
                                plasma: Union[None, pd.DataFrame] = None,
                                parent_fraction: Union[None, pd.DataFrame] = None,
                                bpr: Union[None, pd.DataFrame] = None,
                                time_unit: str = 'min',
                                time_shift: float = 0.0) -> Measurement:
    """
    Builds a :class:`Measurement` from tables.

    Every table has a ``time`` column and a value column: ``activity`` for blood and plasma, ``parent_fraction`` and
    ``bpr`` for the other two. An optional ``weight`` column gives sample weights, and an optional ``method`` column
    marks automatic-sampler rows with ``'continuous'`` (or ``'automatic'``). Rows with missing values are dropped.

    Args:
        blood (pd.DataFrame, optional): Whole-blood samples.
        plasma (pd.DataFrame, optional): Plasma samples.
        parent_fraction (pd.DataFrame, optional): Parent-fraction samples.
        bpr (pd.DataFrame, optional): Blood-to-plasma ratio samples.
        time_unit (str): ``'min'`` or ``'s'``. Seconds are converted to minutes.
        time_shift (float): Blood clock offset in minutes.

    Returns:
        Measurement: New measurement with every slot set to interpolation.
    """
    if time_unit not in ('min', 's'):
        raise InvalidParameterError(f"Invalid time unit: {time_unit}. Must be one of 'min' or 's'.")
    time_scale = 1.0 / 60.0 if time_unit == 's' else 1.0
    tables = {Quantity.BLOOD: blood, Quantity.PLASMA: plasma, Quantity.PARENT_FRACTION: parent_fraction,
              Quantity.BPR: bpr}
    series = {_SERIES_FIELDS[q]: _series_from_dataframe(table, q, time_scale)
              for q, table in tables.items() if table is not None}
    return Measurement(time_shift=time_shift, **series)
