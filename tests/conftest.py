import numpy as np
import pytest

from petkin.input_function.interpolation import InputFunction
from petkin.kinetic_modeling.tac_fitting import simulate_tac
from petkin.utils.time_activity_curve import TimeActivityCurve

TRUE_1TCM = {'k1': 0.12, 'k2': 0.06, 'vb': 0.0}
TRUE_2TCM = {'k1': 0.1, 'k2': 0.15, 'k3': 0.05, 'k4': 0.04, 'vb': 0.05}


def feng_input_function(t, a1=851.1225, a2=21.8798, a3=20.8113, l1=-4.1339, l2=-0.1191, l3=-0.0104, delay=0.7):
    """Feng's analytic plasma input function, zero before ``delay``."""
    t = np.asarray(t, float)
    u = t - delay
    out = np.zeros_like(t)
    pos = u > 0
    out[pos] = ((a1 * u[pos] - a2 - a3) * np.exp(l1 * u[pos]) + a2 * np.exp(l2 * u[pos])
                + a3 * np.exp(l3 * u[pos]))
    return out


def frame_mid_times() -> np.ndarray:
    durations = np.concatenate([np.full(12, 0.25), np.full(8, 0.5), np.full(10, 1.0), np.full(14, 5.0)])
    ends = np.cumsum(durations)
    return ends - durations / 2.0


@pytest.fixture(scope='session')
def aif_times():
    return np.linspace(0.0, 90.0, 1801)


@pytest.fixture(scope='session')
def input_function(aif_times):
    aif = feng_input_function(aif_times)
    return InputFunction.from_arrays(times=aif_times, aif=aif, blood=1.1 * aif)


@pytest.fixture(scope='session')
def frame_times():
    return frame_mid_times()


@pytest.fixture(scope='session')
def tac_1tcm(frame_times, input_function):
    return TimeActivityCurve(times_in_minutes=frame_times,
                             values=simulate_tac('1tcm', frame_times, input_function, TRUE_1TCM))


@pytest.fixture(scope='session')
def tac_2tcm(frame_times, input_function):
    return TimeActivityCurve(times_in_minutes=frame_times,
                             values=simulate_tac('2tcm', frame_times, input_function, TRUE_2TCM))


@pytest.fixture(scope='session')
def tac_2tcm_no_blood(frame_times, input_function):
    params = dict(TRUE_2TCM, vb=0.0)
    return TimeActivityCurve(times_in_minutes=frame_times,
                             values=simulate_tac('2tcm', frame_times, input_function, params))


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)
