import numpy as np
import pytest

from petkin.kinetic_modeling.tac_fitting import simulate_tac
from petkin.kinetic_modeling.tstar import TAC_LABELS, find_tstar_candidates
from petkin.utils.errors import InvalidParameterError
from petkin.utils.time_activity_curve import TimeActivityCurve

MINUTE_FRAMES = np.arange(60) + 0.5


def one_minute_tac(input_function, k1, k2):
    params = {'k1': k1, 'k2': k2, 'vb': 0.0}
    return TimeActivityCurve(times_in_minutes=MINUTE_FRAMES,
                             values=simulate_tac('1tcm', MINUTE_FRAMES, input_function, params, resample_num=8192))


@pytest.fixture(scope='module')
def target_and_reference(input_function):
    return one_minute_tac(input_function, 0.12, 0.06), one_minute_tac(input_function, 0.1, 0.1)


def test_ref_logan_candidates(target_and_reference):
    target, reference = target_and_reference
    candidates = find_tstar_candidates('ref_logan', target, reference_tac=reference, k2prime=0.1, min_frames=10,
                                       max_frames=40)
    table = candidates.for_tac('low')
    assert list(table['included_frames']) == list(range(40, 9, -1))
    assert table['included_frames'].dtype == np.int64
    np.testing.assert_allclose(table['outcome'], 1.0, rtol=5e-2)
    assert np.all(table['r2'] > 0.999)
    # later start frames leave a straighter tail
    assert np.all(np.diff(table['r2']) >= -1e-4)
    assert candidates.method == 'ref_logan'


def test_tacs_are_labelled_by_binding(target_and_reference, input_function):
    target, reference = target_and_reference
    candidates = find_tstar_candidates('ma1', [reference, target], input_function=input_function, min_frames=5,
                                       max_frames=8)
    assert set(candidates.table['tac']) == set(TAC_LABELS[:2])
    assert len(candidates.table) == 8
    low, medium = candidates.for_tac('low'), candidates.for_tac('medium')
    assert np.all(low['outcome'] < medium['outcome'])
    assert candidates.tacs['medium'] is target


def test_labelled_dict(target_and_reference, input_function):
    target, _ = target_and_reference
    candidates = find_tstar_candidates('logan', {'putamen': target}, input_function=input_function, min_frames=20,
                                       max_frames=50)
    assert candidates.table['included_frames'].max() == 50
    assert set(candidates.table['tac']) == {'putamen'}


@pytest.mark.parametrize('kwargs', [dict(min_frames=2),
                                    dict(min_frames=10, max_frames=5),
                                    dict(min_frames=10, max_frames=61),
                                    dict(method='ma2', min_frames=4)])
def test_invalid_frame_ranges(kwargs, target_and_reference, input_function):
    target, _ = target_and_reference
    kwargs = dict(kwargs)
    method = kwargs.pop('method', 'logan')
    with pytest.raises(InvalidParameterError):
        find_tstar_candidates(method, target, input_function=input_function, **kwargs)


def test_invalid_inputs(target_and_reference):
    target, reference = target_and_reference
    with pytest.raises(InvalidParameterError):
        find_tstar_candidates('ref_logan', target, reference_tac=reference, min_frames=10)
    with pytest.raises(InvalidParameterError):
        find_tstar_candidates('ref_logan', [target] * 4, reference_tac=reference, k2prime=0.1)
    with pytest.raises(InvalidParameterError):
        find_tstar_candidates('srtm', target)
