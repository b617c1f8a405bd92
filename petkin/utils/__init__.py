from .errors import (InvalidParameterError,
                     InsufficientDataError,
                     NonConvergentFitError,
                     BoundaryHitWarning,
                     ModelSelectionAmbiguousWarning)
from .time_activity_curve import TimeActivityCurve, safe_load_tac, weights_from_frames
