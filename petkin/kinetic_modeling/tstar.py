"""
Candidate sets for choosing t*, the first frame past which a linearized model holds.

For each candidate count of included final frames, from all frames down to ``min_frames``, the graphical method is
run on up to three TACs of differing expected binding (labelled ``low``, ``medium`` and ``high``). The regression
:math:`R^2`, the maximum percent residual and the outcome parameter of every run are tabulated for inspection. The
choice of t* is left to the analyst.

Example:

    .. code-block:: python

        from petkin.kinetic_modeling.tstar import find_tstar_candidates

        candidates = find_tstar_candidates('ref_logan', [caudate_tac, putamen_tac], reference_tac=cerebellum_tac,
                                           k2prime=0.1, min_frames=5)
        print(candidates.table.pivot(index='included_frames', columns='tac', values='outcome'))

"""
import logging
from dataclasses import dataclass
from typing import Dict, Sequence, Union

import numpy as np
import pandas as pd

from ..input_function.interpolation import InputFunction
from ..utils.errors import InvalidParameterError
from ..utils.time_activity_curve import TimeActivityCurve
from .graphical_analysis import REFERENCE_METHODS, get_graphical_analysis_method, run_graphical_analysis

logger = logging.getLogger(__name__)

TAC_LABELS = ('low', 'medium', 'high')

_NUM_COEFS = {'logan': 2, 'ref_logan': 2, 'ml_logan': 2, 'ma1': 2, 'ma2': 4}


@dataclass(frozen=True)
class TStarCandidateSet:
    """Per-frame-count regression diagnostics for one graphical method.

    Attributes:
        method (str): Graphical method name.
        table (pd.DataFrame): Columns ``included_frames``, ``tac``, ``r2``, ``max_perc_resid`` and ``outcome``,
            ordered by descending ``included_frames``.
        tacs (dict[str, TimeActivityCurve]): The labelled TACs used.
    """
    method: str
    table: pd.DataFrame
    tacs: Dict[str, TimeActivityCurve]

    def for_tac(self, label: str) -> pd.DataFrame:
        """Rows of one TAC."""
        return self.table[self.table['tac'] == label].reset_index(drop=True)


def _label_tacs(tacs: Union[TimeActivityCurve,
                            Sequence[TimeActivityCurve],
                            Dict[str, TimeActivityCurve]]) -> Dict[str, TimeActivityCurve]:
    if isinstance(tacs, TimeActivityCurve):
        tacs = [tacs]
    if not isinstance(tacs, dict):
        tacs = list(tacs)
        if len(tacs) > len(TAC_LABELS):
            raise InvalidParameterError(f"At most {len(TAC_LABELS)} TACs are supported, got {len(tacs)}.")
        tacs = dict(zip(TAC_LABELS, tacs))
    if not 0 < len(tacs) <= len(TAC_LABELS):
        raise InvalidParameterError(f"Between 1 and {len(TAC_LABELS)} TACs are required, got {len(tacs)}.")
    return dict(tacs)


def find_tstar_candidates(method: str,
                          tacs: Union[TimeActivityCurve, Sequence[TimeActivityCurve], Dict[str, TimeActivityCurve]],
                          input_function: Union[None, InputFunction] = None,
                          reference_tac: Union[None, TimeActivityCurve] = None,
                          k2prime: Union[None, float] = None,
                          min_frames: int = 3,
                          max_frames: Union[None, int] = None,
                          vb: float = 0.0) -> TStarCandidateSet:
    """
    Runs a graphical method for every candidate count of included frames.

    Args:
        method (str): One of the methods of :func:`~.graphical_analysis.get_graphical_analysis_method`.
        tacs: One TAC, a sequence of up to three TACs (labelled ``low``, ``medium``, ``high`` in order), or a dict
            of labelled TACs.
        input_function (InputFunction, optional): Needed by the arterial methods.
        reference_tac (TimeActivityCurve, optional): Needed by ``ref_logan``.
        k2prime (float, optional): Needed by ``ref_logan``.
        min_frames (int): Smallest number of included frames tried.
        max_frames (int, optional): Largest number of included frames tried. Defaults to all frames of the shortest
            TAC.
        vb (float): Blood volume fraction for the arterial methods.

    Returns:
        TStarCandidateSet: The candidate table and the labelled TACs.

    Raises:
        InvalidParameterError: If the method, the TACs or the frame-count range is invalid.
    """
    get_graphical_analysis_method(method)
    labelled = _label_tacs(tacs)
    num_frames = min(len(tac) for tac in labelled.values())
    max_frames = num_frames if max_frames is None else max_frames
    if not _NUM_COEFS[method] < min_frames <= max_frames <= num_frames:
        raise InvalidParameterError(f"Frame counts must satisfy {_NUM_COEFS[method]} < min_frames <= max_frames <= "
                                    f"{num_frames}; got min_frames={min_frames}, max_frames={max_frames}.")
    if method in REFERENCE_METHODS and k2prime is None:
        raise InvalidParameterError(f"{method} needs `k2prime`.")

    rows = []
    for label, tac in labelled.items():
        for included in range(max_frames, min_frames - 1, -1):
            fit = run_graphical_analysis(method, tac=tac, tstar_included_frames=included,
                                         input_function=input_function, reference_tac=reference_tac,
                                         k2prime=k2prime, vb=vb)
            rows.append({'included_frames': included,
                         'tac': label,
                         'r2': fit.r2,
                         'max_perc_resid': fit.max_perc_resid,
                         'outcome': fit.outcome})
        logger.debug("t* candidates for %s: %d frame counts.", label, max_frames - min_frames + 1)

    table = pd.DataFrame(rows, columns=['included_frames', 'tac', 'r2', 'max_perc_resid', 'outcome'])
    table['included_frames'] = table['included_frames'].astype(np.int64)
    return TStarCandidateSet(method=method, table=table, tacs=labelled)
