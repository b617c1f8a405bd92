r"""
Information criteria and ranking of competing curve fits.

Both criteria are computed from the weighted residual sum of squares under a Gaussian error model:

.. math::

    \mathrm{AIC} = n\ln\left(\frac{\mathrm{WRSS}}{n}\right) + 2k,\qquad
    \mathrm{BIC} = n\ln\left(\frac{\mathrm{WRSS}}{n}\right) + k\ln n

where :math:`n` is the number of observations with non-zero weight and :math:`k` the number of fitted parameters.
Lower is better.

"""
import logging
import warnings
from typing import Sequence, Tuple

import numpy as np
import pandas as pd

from ..utils.errors import InvalidParameterError, ModelSelectionAmbiguousWarning

logger = logging.getLogger(__name__)


def information_criteria(wrss: float, n_obs: int, n_params: int) -> Tuple[float, float]:
    """
    Computes the AIC and BIC of a least-squares fit.

    A perfect fit would give :math:`\\ln 0`, so the WRSS is floored at the smallest positive double times ``n_obs``.

    Args:
        wrss (float): Weighted residual sum of squares.
        n_obs (int): Number of observations.
        n_params (int): Number of fitted parameters.

    Returns:
        tuple[float, float]: ``(aic, bic)``.
    """
    if n_obs < 1:
        raise InvalidParameterError("Information criteria need at least one observation.")
    wrss = max(float(wrss), n_obs * np.finfo(float).tiny)
    log_lik_term = n_obs * np.log(wrss / n_obs)
    return log_lik_term + 2.0 * n_params, log_lik_term + n_params * np.log(n_obs)


def compare_models(fits: Sequence,
                   criterion: str = 'bic',
                   ambiguity_threshold: float = 2.0) -> pd.DataFrame:
    """
    Ranks fitted curves by an information criterion.

    Rows are sorted by the criterion and then by parameter count, so that between equally good fits the simpler model
    comes first. If the best two rows differ by less than ``ambiguity_threshold`` a
    :class:`ModelSelectionAmbiguousWarning` is issued; the ranking is still returned.

    Args:
        fits (Sequence[FittedCurve]): Fits to compare. They should be fit to the same observations.
        criterion (str): ``'bic'`` or ``'aic'``.
        ambiguity_threshold (float): Minimum criterion difference for an unambiguous choice.

    Returns:
        pd.DataFrame: One row per fit with columns ``model``, ``n_obs``, ``n_params``, ``wrss``, ``aic``, ``bic``,
        ``delta`` (difference to the best) and ``fit`` (the fitted object).

    Raises:
        InvalidParameterError: If ``criterion`` is unknown or no fits are given.
    """
    criterion = criterion.lower()
    if criterion not in ('aic', 'bic'):
        raise InvalidParameterError(f"Invalid criterion: {criterion}. Must be one of 'aic' or 'bic'.")
    if len(fits) == 0:
        raise InvalidParameterError("At least one fit is needed for a comparison.")

    table = pd.DataFrame({'model': [fit.model.name for fit in fits],
                          'n_obs': [fit.n_obs for fit in fits],
                          'n_params': [fit.n_params for fit in fits],
                          'wrss': [fit.wrss for fit in fits],
                          'aic': [fit.aic for fit in fits],
                          'bic': [fit.bic for fit in fits],
                          'fit': list(fits)})
    table = table.sort_values(by=[criterion, 'n_params'], kind='mergesort').reset_index(drop=True)
    table['delta'] = table[criterion] - table[criterion].iloc[0]

    if len(table) > 1 and table['delta'].iloc[1] < ambiguity_threshold:
        warnings.warn(f"{criterion.upper()} of '{table['model'].iloc[0]}' and '{table['model'].iloc[1]}' differ by "
                      f"{table['delta'].iloc[1]:.3g}, less than {ambiguity_threshold}.",
                      ModelSelectionAmbiguousWarning, stacklevel=2)
    logger.debug("Model ranking by %s: %s", criterion, list(table['model']))
    return table
