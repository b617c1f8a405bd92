import numpy as np
import pytest

from petkin.input_function.dispersion import (apply_dispersion, correct_blood_dispersion, correct_dispersion,
                                              moving_average_3pt)
from petkin.input_function.measurement import Measurement
from petkin.utils.errors import InvalidParameterError


def gamma_variate(t, amplitude=100.0, scale=0.5):
    return amplitude * t ** 2 * np.exp(-t / scale)


class TestCorrectDispersion:
    def test_round_trip_recovers_curve(self):
        times = np.arange(0.0, 10.0, 1.0 / 60.0)
        true = gamma_variate(times)
        dispersed = apply_dispersion(times, true, tau=5.0 / 60.0)
        corrected = correct_dispersion(times, dispersed, tau=5.0 / 60.0)
        np.testing.assert_allclose(corrected, true, atol=1e-2 * true.max())
        assert np.max(np.abs(dispersed - true)) > 5e-2 * true.max()

    def test_zero_tau_is_identity(self):
        times = np.linspace(0.0, 5.0, 11)
        vals = gamma_variate(times)
        np.testing.assert_array_equal(correct_dispersion(times, vals, tau=0.0), vals)
        np.testing.assert_array_equal(apply_dispersion(times, vals, tau=0.0), vals)

    def test_output_has_input_length_for_irregular_sampling(self):
        times = np.array([0.0, 0.1, 0.25, 0.3, 0.7, 1.0, 1.65])
        corrected = correct_dispersion(times, gamma_variate(times), tau=0.05)
        assert corrected.shape == times.shape

    def test_smoothing_reduces_noise(self, rng):
        times = np.arange(0.0, 5.0, 1.0 / 60.0)
        noisy = gamma_variate(times) + rng.normal(0.0, 0.5, size=times.shape)
        rough = correct_dispersion(times, noisy, tau=0.1)
        smooth = correct_dispersion(times, noisy, tau=0.1, smooth_iterations=3)
        assert np.std(np.diff(smooth)) < np.std(np.diff(rough))

    @pytest.mark.parametrize('times, tau', [(np.array([0.0, 2.0, 1.0]), 0.1),
                                            (np.array([0.0, 1.0, 2.0]), -0.1),
                                            (np.array([0.0, 1.0, 1.0]), 0.1)])
    def test_invalid_input(self, times, tau):
        with pytest.raises(InvalidParameterError):
            correct_dispersion(times, np.ones_like(times), tau=tau)

    def test_near_duplicate_sample_times(self):
        times = np.arange(600) / 60.0
        times[300] = times[299] + 1e-7
        corrected = correct_dispersion(times, np.exp(-times), tau=0.1)
        assert corrected.shape == times.shape
        np.testing.assert_allclose(corrected, 0.9 * np.exp(-times), rtol=1e-3)

    def test_grid_step_too_small(self):
        times = np.linspace(0.0, 10.0, 11)
        with pytest.raises(InvalidParameterError):
            correct_dispersion(times, np.exp(-times), tau=0.1, time_delta=1e-6)

    def test_negative_smoothing(self):
        with pytest.raises(InvalidParameterError):
            correct_dispersion(np.arange(3.0), np.ones(3), tau=0.1, smooth_iterations=-1)


def test_moving_average_keeps_end_points():
    vals = np.array([0.0, 3.0, 0.0, 3.0, 0.0])
    np.testing.assert_allclose(moving_average_3pt(vals), [0.0, 1.0, 2.0, 1.0, 0.0])
    np.testing.assert_array_equal(moving_average_3pt(vals, iterations=0), vals)


class TestCorrectBloodDispersion:
    def test_only_continuous_samples_are_corrected(self):
        auto_t = np.arange(0.0, 5.0, 1.0 / 60.0)
        manual_t = np.array([7.5, 10.0, 20.0])
        times = np.concatenate([auto_t, manual_t])
        vals = np.concatenate([apply_dispersion(auto_t, gamma_variate(auto_t), 0.1), gamma_variate(manual_t)])
        flags = np.concatenate([np.ones(len(auto_t), bool), np.zeros(3, bool)])
        meas = Measurement.from_arrays(blood=(times, vals), blood_continuous=flags)

        corrected = correct_blood_dispersion(meas, tau=0.1)

        np.testing.assert_array_equal(corrected.blood.values[-3:], vals[-3:])
        np.testing.assert_allclose(corrected.blood.values[:-3], gamma_variate(auto_t),
                                   atol=1e-2 * gamma_variate(auto_t).max())
        np.testing.assert_array_equal(meas.blood.values, vals)
        np.testing.assert_array_equal(corrected.blood.continuous, flags)

    def test_needs_blood(self):
        with pytest.raises(InvalidParameterError):
            correct_blood_dispersion(Measurement.from_arrays(plasma=([0.0, 1.0], [0.0, 1.0])), tau=0.1)
