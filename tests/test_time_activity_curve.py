import numpy as np
import pytest

from petkin.utils import InvalidParameterError, TimeActivityCurve, weights_from_frames


class TestTimeActivityCurve:
    def test_defaults_to_unit_weights(self):
        tac = TimeActivityCurve(times_in_minutes=[0.5, 1.5, 2.5], values=[1.0, 2.0, 3.0])
        np.testing.assert_array_equal(tac.weights, np.ones(3))
        assert len(tac) == 3

    def test_arrays_are_read_only(self):
        times = np.array([0.5, 1.5, 2.5])
        tac = TimeActivityCurve(times_in_minutes=times, values=[1.0, 2.0, 3.0])
        times[0] = 100.0
        assert tac.times_in_minutes[0] == 0.5
        with pytest.raises(ValueError):
            tac.values[0] = 5.0

    @pytest.mark.parametrize('times, weights', [([1.0, 1.0, 2.0], None),
                                                ([1.0, 2.0, 3.0], [1.0, -1.0, 1.0]),
                                                ([1.0, 2.0], None)])
    def test_rejects_invalid_frames(self, times, weights):
        with pytest.raises(InvalidParameterError):
            TimeActivityCurve(times_in_minutes=times, values=[1.0, 2.0, 3.0], weights=weights)

    def test_frame_window(self):
        tac = TimeActivityCurve(times_in_minutes=np.arange(10) + 0.5, values=np.arange(10.0),
                                weights=np.linspace(0.1, 1.0, 10))
        early = tac.frame_window(0, 4)
        assert len(early) == 4
        np.testing.assert_array_equal(early.values, [0.0, 1.0, 2.0, 3.0])
        np.testing.assert_allclose(early.weights, tac.weights[:4])
        assert len(tac.frame_window(7)) == 3
        with pytest.raises(InvalidParameterError):
            tac.frame_window(5, 5)

    def test_frame_durations(self):
        tac = TimeActivityCurve(times_in_minutes=[0.5, 1.5, 3.5], values=[1.0, 1.0, 1.0])
        np.testing.assert_allclose(tac.get_frame_durations(), [1.0, 2.0, 2.0])

    def test_from_file_converts_seconds(self, tmp_path):
        path = tmp_path / 'tac.txt'
        np.savetxt(path, np.column_stack([[30.0, 90.0, 600.0], [1.0, 2.0, 3.0], [1.0, 0.5, 0.25]]),
                   header='time activity weight')
        tac = TimeActivityCurve.from_file(str(path))
        np.testing.assert_allclose(tac.times_in_minutes, [0.5, 1.5, 10.0])
        np.testing.assert_allclose(tac.weights, [1.0, 0.5, 0.25])


class TestWeightsFromFrames:
    def test_proportional_to_counts(self):
        weights = weights_from_frames(frame_starts=[0.0, 1.0, 3.0], frame_ends=[1.0, 3.0, 7.0],
                                      tac_vals=[4.0, 2.0, 1.0])
        np.testing.assert_allclose(weights, [1.0, 1.0, 1.0])

    def test_decay_reduces_late_weights(self):
        weights = weights_from_frames(frame_starts=[0.0, 10.0], frame_ends=[10.0, 20.0], tac_vals=[1.0, 1.0],
                                      half_life_in_minutes=10.0)
        assert weights[0] == 1.0
        np.testing.assert_allclose(weights[1], 0.5, rtol=1e-12)

    def test_rejects_empty_frames(self):
        with pytest.raises(InvalidParameterError):
            weights_from_frames(frame_starts=[0.0, 1.0], frame_ends=[1.0, 1.0], tac_vals=[1.0, 1.0])
