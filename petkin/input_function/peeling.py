r"""
Staged starting-value estimation for sums of exponentials ("exponential peeling").

Sums of decaying exponentials are not identifiable by direct optimization from arbitrary starts: the components can
swap roles and the optimizer gets stuck. Peeling estimates one component at a time, slowest first:

1. Fit :math:`\ln C(t) = \ln A_n - \alpha_n t` on the tail segment of the curve, where the slowest component
   dominates.
2. Subtract :math:`A_n e^{-\alpha_n t}` from the whole curve.
3. Repeat on the residual using the segment that precedes the tail, and so on.

Which fraction of the samples each component is assumed to dominate depends on the tracer, so the fractions are
configuration (:class:`ExpPeelingConfig`). Every stage is retained on the :class:`ExponentialPeeling` object so that
the intermediate residual curves can be inspected or plotted.

"""
import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

import numpy as np

from ..utils.errors import InsufficientDataError, InvalidParameterError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpPeelingConfig:
    """Fractions of the (post-peak) samples assigned to each exponential component.

    Attributes:
        fractions (Sequence[float], optional): One fraction per component, ordered slowest (tail) first. Each must be
            positive and they must add up to at most one. Defaults to an equal split.
    """
    fractions: Union[None, Sequence[float]] = None

    def resolve(self, n_components: int) -> np.ndarray:
        """Returns the validated fractions for ``n_components`` components."""
        if n_components < 1:
            raise InvalidParameterError("At least one exponential component is required.")
        if self.fractions is None:
            return np.full(n_components, 1.0 / n_components)
        fractions = np.asarray(self.fractions, float)
        if fractions.shape != (n_components,):
            raise InvalidParameterError(f"Expected {n_components} peeling fractions, got {len(fractions)}.")
        if np.any(fractions <= 0) or np.sum(fractions) > 1.0 + 1e-12:
            raise InvalidParameterError("Peeling fractions must be positive and add up to at most one.")
        return fractions


@dataclass(frozen=True)
class PeelingStage:
    """Intermediate state of one peeling stage.

    Attributes:
        segment (np.ndarray): Boolean mask of the samples this stage was fit to.
        residual (np.ndarray): Curve the stage was fit to, i.e. the data minus all slower components.
        amplitude (float): Fitted amplitude :math:`A`.
        rate (float): Fitted decay rate :math:`\\alpha`.
    """
    segment: np.ndarray
    residual: np.ndarray
    amplitude: float
    rate: float


def _log_linear_fit(times: np.ndarray, vals: np.ndarray, weights: np.ndarray) -> Tuple[float, float]:
    positive = vals > 0
    if np.count_nonzero(positive) < 2:
        raise InsufficientDataError("Need two positive residuals for a log-linear fit.")
    slope, intercept = np.polyfit(times[positive], np.log(vals[positive]), deg=1, w=np.sqrt(weights[positive]))
    return float(np.exp(intercept)), float(-slope)


class ExponentialPeeling:
    r"""
    Multi-stage estimator for :math:`C(t)=\sum_{i=1}^{n} A_i e^{-\alpha_i t}`.

    The samples are split into consecutive segments, counted backwards from the last sample, with sizes set by the
    peeling fractions. Stage :math:`j` fits the :math:`j`-th slowest component on its segment of the residual left by
    the previous stages.

    Example:

        .. code-block:: python

            import numpy as np
            from petkin.input_function.peeling import ExponentialPeeling

            t = np.linspace(0, 60, 121)
            c = 30.0 * np.exp(-2.0 * t) + 5.0 * np.exp(-0.05 * t)
            peeler = ExponentialPeeling(times=t, values=c, n_components=2)
            components = peeler.run()  # [(A_fast, alpha_fast), (A_slow, alpha_slow)]

    Attributes:
        stages (list[PeelingStage]): Stages in the order they were run (slowest component first).
    """
    def __init__(self,
                 times: np.ndarray,
                 values: np.ndarray,
                 n_components: int,
                 weights: Union[None, np.ndarray] = None,
                 config: Union[None, ExpPeelingConfig] = None):
        self.times = np.asarray(times, float)
        self.values = np.asarray(values, float)
        self.weights = np.ones_like(self.times) if weights is None else np.asarray(weights, float)
        self.n_components = n_components
        self.config = ExpPeelingConfig() if config is None else config
        self.fractions = self.config.resolve(n_components)
        self.stages: List[PeelingStage] = []

    def segments(self) -> List[np.ndarray]:
        """Boolean masks of the sample segments, slowest component first."""
        num = len(self.times)
        sizes = np.maximum(np.round(self.fractions * num).astype(int), 2)
        masks = []
        end = num
        for size in sizes:
            start = max(end - size, 0)
            mask = np.zeros(num, dtype=bool)
            mask[start:end] = True
            masks.append(mask)
            end = start if start > 0 else end
        return masks

    def run(self) -> List[Tuple[float, float]]:
        """
        Runs all stages and returns the components ordered fastest first.

        If a stage has fewer than two positive residuals in its segment, it falls back to the segment's largest
        residual as amplitude and three times the previous rate (or one) as decay rate.

        Returns:
            list[tuple[float, float]]: ``(amplitude, rate)`` per component, fastest decay first.
        """
        self.stages = []
        residual = self.values.copy()
        prev_rate = None
        for mask in self.segments():
            try:
                amp, rate = _log_linear_fit(self.times[mask], residual[mask], self.weights[mask])
            except InsufficientDataError:
                amp = max(float(np.max(residual[mask])), 1e-6 * float(np.max(np.abs(self.values))), 1e-12)
                rate = 1.0 if prev_rate is None else 3.0 * prev_rate
                logger.debug("Peeling stage %d fell back to amplitude %.4g and rate %.4g.", len(self.stages), amp, rate)
            if prev_rate is not None:
                rate = max(rate, 1.5 * prev_rate)
            rate = max(rate, 1e-6)
            self.stages.append(PeelingStage(segment=mask, residual=residual.copy(), amplitude=amp, rate=rate))
            residual = residual - amp * np.exp(-rate * self.times)
            prev_rate = rate
        return [(stage.amplitude, stage.rate) for stage in reversed(self.stages)]
