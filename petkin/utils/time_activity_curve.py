"""
Class to handle data related to time activity curves (TACs).

A TAC is an ordered set of ``(time, activity, weight)`` frames for a single region. Times are frame
mid-times in minutes. Weights are non-negative and proportional to the reliability of each frame.

"""
from dataclasses import dataclass, field
from typing import Union
import numpy as np

from .errors import InvalidParameterError


def safe_load_tac(filename: str, **kwargs) -> np.ndarray:
    """
    Loads time-activity curves (TAC) from a file.

    Tries to read a TAC from specified file and raises an exception if unable to do so. We assume that the file has
    two or three columns: time, activity and, optionally, frame weights. A single header row is skipped if present.
    Times larger than 300 are assumed to be in seconds and are converted to minutes.

    Args:
        filename (str): The name of the file to be loaded.

    Returns:
        np.ndarray: Array where the first index corresponds to the times, the second to the activity and, if present,
        the third to the weights.

    Raises:
        ValueError: An error occurred loading the TAC.
    """
    try:
        tac_data = np.asarray(np.loadtxt(filename, **kwargs).T, dtype=float, order='C')
    except ValueError:
        tac_data = np.asarray(np.loadtxt(filename, skiprows=1, **kwargs).T, dtype=float, order='C')

    if np.max(tac_data[0]) >= 300:
        tac_data[0] /= 60.0

    return tac_data


def _frozen_copy(arr) -> np.ndarray:
    out = np.array(arr, dtype=float, copy=True)
    out.flags.writeable = False
    return out


@dataclass(frozen=True)
class TimeActivityCurve:
    """Class to store time activity curve (TAC) data.

    Attributes:
        times_in_minutes (np.ndarray): Frame mid-times for the TAC stored in an array.
        values (np.ndarray): Activity values at each frame time stored in an array.
        weights (np.ndarray): Non-negative frame weights. Defaults to ones.
    """
    times_in_minutes: np.ndarray
    values: np.ndarray
    weights: np.ndarray = field(default=None)

    def __post_init__(self):
        times = _frozen_copy(self.times_in_minutes)
        values = _frozen_copy(self.values)
        if self.weights is None:
            weights = _frozen_copy(np.ones_like(times))
        else:
            weights = _frozen_copy(self.weights)
        if not (times.ndim == 1 and times.shape == values.shape == weights.shape):
            raise InvalidParameterError("TAC times, values and weights must be 1D arrays of the same length.")
        if np.any(np.diff(times) <= 0):
            raise InvalidParameterError("TAC times must be strictly increasing.")
        if np.any(weights < 0) or not np.all(np.isfinite(weights)):
            raise InvalidParameterError("TAC weights must be finite and non-negative.")
        object.__setattr__(self, 'times_in_minutes', times)
        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'weights', weights)

    def __len__(self) -> int:
        return len(self.times_in_minutes)

    @classmethod
    def from_file(cls, filename: str) -> 'TimeActivityCurve':
        """Builds a TAC from a whitespace-delimited file. See :func:`safe_load_tac`."""
        tac_data = safe_load_tac(filename)
        weights = tac_data[2] if len(tac_data) > 2 else None
        return cls(times_in_minutes=tac_data[0], values=tac_data[1], weights=weights)

    def frame_window(self, start: int = 0, end: Union[int, None] = None) -> 'TimeActivityCurve':
        """
        Returns a new TAC restricted to frames ``[start, end)``.

        Args:
            start (int): Index of the first frame to keep.
            end (int, optional): Index one past the last frame to keep. Defaults to all remaining frames.

        Raises:
            InvalidParameterError: If the window is empty.
        """
        end = len(self) if end is None else end
        if not 0 <= start < end <= len(self):
            raise InvalidParameterError(f"Invalid frame window [{start}, {end}) for a TAC with {len(self)} frames.")
        return TimeActivityCurve(times_in_minutes=self.times_in_minutes[start:end],
                                 values=self.values[start:end],
                                 weights=self.weights[start:end])

    def get_frame_durations(self) -> np.ndarray:
        """
        Get array containing the duration of each frame in minutes.

        For a set of N frames, the first N-1 frame durations are estimated as the difference
        between each frame time and the next frame time. Frame N is then inferred as being the same
        duration as frame N-1.

        Returns:
            np.ndarray: The estimated duration of each frame in minutes.
        """
        durations = np.zeros(len(self))
        durations[:-1] = self.times_in_minutes[1:] - self.times_in_minutes[:-1]
        durations[-1] = durations[-2] if len(self) > 1 else 1.0
        return durations


def weights_from_frames(frame_starts: np.ndarray,
                        frame_ends: np.ndarray,
                        tac_vals: np.ndarray,
                        half_life_in_minutes: Union[float, None] = None) -> np.ndarray:
    r"""
    Computes frame weights from frame durations and decay-uncorrected counts.

    The weights are :math:`w_i=\Delta t_i\,C_i e^{-\lambda t_i}` normalised to a maximum of one, where
    :math:`\lambda=\ln(2)/T_{1/2}` and :math:`t_i` is the frame mid-time, i.e. proportional to the counts collected
    in each frame. Without a half-life no decay is removed.

    Args:
        frame_starts (np.ndarray): Frame start times in minutes.
        frame_ends (np.ndarray): Frame end times in minutes.
        tac_vals (np.ndarray): Decay-corrected activity per frame.
        half_life_in_minutes (float, optional): Radionuclide half-life in minutes.

    Returns:
        np.ndarray: Frame weights in ``[0, 1]``.
    """
    frame_starts = np.asarray(frame_starts, float)
    frame_ends = np.asarray(frame_ends, float)
    tac_vals = np.asarray(tac_vals, float)
    durations = frame_ends - frame_starts
    if np.any(durations <= 0):
        raise InvalidParameterError("Every frame must end after it starts.")
    mid_times = (frame_starts + frame_ends) / 2.0
    decay = np.ones_like(mid_times)
    if half_life_in_minutes is not None:
        decay = np.exp(-np.log(2.0) / half_life_in_minutes * mid_times)
    weights = durations * np.clip(tac_vals, 0.0, None) * decay
    if np.max(weights) <= 0:
        return np.ones_like(weights)
    return weights / np.max(weights)
