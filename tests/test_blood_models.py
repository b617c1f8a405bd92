import warnings

import numpy as np
import pytest

from petkin.input_function.blood_models import MultiExponentialModel, SplineHandoffConfig, SplineHandoffModel
from petkin.input_function.interpolation import InputFunction
from petkin.input_function.measurement import Measurement, Quantity
from petkin.input_function.model_selection import compare_models
from petkin.input_function.peeling import ExpPeelingConfig
from petkin.utils.errors import InsufficientDataError, InvalidParameterError

TRUE_2EXP = {'t0': 0.4, 't_peak': 1.0, 'a1': 30.0, 'alpha1': 2.0, 'a2': 5.0, 'alpha2': 0.05}
TRUE_3EXP = {'t0': 0.4, 't_peak': 1.0, 'a1': 30.0, 'alpha1': 4.0, 'a2': 8.0, 'alpha2': 0.4, 'a3': 3.0,
             'alpha3': 0.02}


def biexp_samples():
    post_peak = np.array([0.1, 0.2, 0.3, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 4.0, 5.0, 7.0, 10.0, 15.0, 20.0, 30.0, 45.0,
                          60.0])
    times = np.concatenate([[0.0, 0.2, 0.4, 0.6, 0.8, 1.0], 1.0 + post_peak])
    return times, MultiExponentialModel(n_exp=2).evaluate(times, **TRUE_2EXP)


class TestMultiExponentialModel:
    def test_recovers_two_exponentials(self):
        times, values = biexp_samples()
        fit = MultiExponentialModel(n_exp=2).fit(times, values)
        assert fit.params['t_peak'] == 1.0
        for name in ('t0', 'a1', 'alpha1', 'a2', 'alpha2'):
            assert fit.params[name] == pytest.approx(TRUE_2EXP[name], rel=1e-2), name
        assert fit.n_params == 5

    def test_shape(self):
        model = MultiExponentialModel(n_exp=3)
        params = {'t0': 0.5, 't_peak': 1.0, 'a1': 10.0, 'alpha1': 3.0, 'a2': 5.0, 'alpha2': 0.3, 'a3': 1.0,
                  'alpha3': 0.01}
        vals = model.evaluate(np.array([0.0, 0.5, 0.75, 1.0, 2.0]), **params)
        np.testing.assert_allclose(vals[:4], [0.0, 0.0, 8.0, 16.0])
        assert vals[4] == pytest.approx(10.0 * np.exp(-3.0) + 5.0 * np.exp(-0.3) + np.exp(-0.01))
        assert model.name == '3exp'
        assert model.param_names == ('t0', 't_peak', 'a1', 'alpha1', 'a2', 'alpha2', 'a3', 'alpha3')

    def test_peeling_fractions_must_match_components(self):
        with pytest.raises(InvalidParameterError):
            MultiExponentialModel(n_exp=3, peeling_config=ExpPeelingConfig(fractions=(0.5, 0.5)))

    def test_invalid_component_count(self):
        with pytest.raises(InvalidParameterError):
            MultiExponentialModel(n_exp=4)

    def test_peak_at_first_sample(self):
        times = np.linspace(0.0, 10.0, 12)
        with pytest.raises(InsufficientDataError):
            MultiExponentialModel(n_exp=2).fit(times, 10.0 * np.exp(-times))

    def test_peak_at_last_sample(self):
        times = np.linspace(0.0, 5.0, 10)
        with pytest.raises(InsufficientDataError):
            MultiExponentialModel().fit(times, times)

    def test_needs_two_samples_per_component_after_peak(self):
        times, values = biexp_samples()
        keep = times <= 1.75
        assert np.count_nonzero(times[keep] > 1.0) == 5
        with pytest.raises(InsufficientDataError):
            MultiExponentialModel(n_exp=3).fit(times[keep], values[keep])


def dense_samples(n_exp, params, rng):
    times = np.concatenate([[0.0, 0.2, 0.4, 0.6, 0.8, 1.0], 1.0 + np.geomspace(0.05, 60.0, 40)])
    values = MultiExponentialModel(n_exp=n_exp).evaluate(times, **params)
    return times, values + rng.normal(0.0, 0.05, size=times.shape)


class TestExponentialCountSelection:
    @pytest.mark.parametrize('n_true, params', [(2, TRUE_2EXP), (3, TRUE_3EXP)])
    def test_bic_prefers_the_generating_model(self, n_true, params, rng):
        times, values = dense_samples(n_true, params, rng)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            fits = [MultiExponentialModel(n_exp=n).fit(times, values) for n in (2, 3)]
            ranking = compare_models(fits, criterion='bic')
        assert ranking['model'].iloc[0] == f"{n_true}exp"


def handoff_samples():
    rise_t = np.array([0.0, 0.25, 0.5, 0.75, 1.0])
    auto_t = np.arange(1.1, 6.0, 0.1)
    manual_t = np.array([4.0, 5.0, 8.0, 15.0, 30.0, 45.0, 60.0])
    curve = lambda t: 80.0 * np.exp(-1.0 * (t - 1.0)) + 20.0 * np.exp(-0.02 * (t - 1.0))
    times = np.concatenate([rise_t, auto_t, manual_t])
    values = np.concatenate([100.0 * rise_t, curve(auto_t), 1.05 * curve(manual_t)])
    values[-1] = values[-2] * 1.2
    flags = np.concatenate([np.ones(len(rise_t) + len(auto_t), bool), np.zeros(len(manual_t), bool)])
    return times, values, flags


class TestSplineHandoffModel:
    config = SplineHandoffConfig(rise_smoothing=0.0, auto_smoothing=0.0, manual_smoothing=0.0)

    def test_segments_and_blend_window(self):
        times, values, flags = handoff_samples()
        fit = SplineHandoffModel(self.config).fit(times, values, continuous=flags)
        assert fit.params['t_peak'] == 1.0
        assert fit.params['blend_start'] == pytest.approx(4.0)
        assert fit.params['blend_end'] == pytest.approx(5.9)
        segments = fit.payload
        assert segments['auto'].times[0] == 1.0
        assert segments['manual'].times[0] == 4.0

    def test_follows_each_segment(self):
        times, values, flags = handoff_samples()
        fit = SplineHandoffModel(self.config).fit(times, values, continuous=flags)
        rise = times < 1.0
        np.testing.assert_allclose(fit(times[rise]), values[rise], atol=1e-8)
        early_auto = flags & (times >= 1.0) & (times < 4.0)
        np.testing.assert_allclose(fit(times[early_auto]), values[early_auto], rtol=1e-6)
        late_manual = ~flags & (times > 6.0)
        np.testing.assert_allclose(fit(times[late_manual]), values[late_manual], rtol=1e-6)

    def test_late_rise_is_kept_and_held(self):
        times, values, flags = handoff_samples()
        fit = SplineHandoffModel(self.config).fit(times, values, continuous=flags)
        assert fit(np.array([60.0]))[0] > fit(np.array([45.0]))[0]
        np.testing.assert_allclose(fit(np.array([60.0, 90.0])), [values[-1], values[-1]], rtol=1e-6)

    def test_blend_is_continuous(self):
        times, values, flags = handoff_samples()
        fit = SplineHandoffModel(self.config).fit(times, values, continuous=flags)
        fine = np.linspace(3.0, 7.0, 4001)
        steps = np.abs(np.diff(fit(fine)))
        assert steps.max() < 0.1

    def test_blend_weight(self):
        weights = SplineHandoffModel.blend_weight(np.array([0.0, 2.0, 3.0, 4.0, 9.0]), 2.0, 4.0)
        np.testing.assert_allclose(weights, [0.0, 0.0, 0.5, 1.0, 1.0])

    def test_without_flags_everything_is_automatic(self):
        times, values, flags = handoff_samples()
        fit = SplineHandoffModel().fit(times[flags], values[flags])
        assert fit.payload['manual'] is None
        assert np.isnan(fit.params['blend_start'])

    def test_flags_must_match_samples(self):
        times, values, flags = handoff_samples()
        with pytest.raises(InvalidParameterError):
            SplineHandoffModel(self.config).fit(times, values, continuous=flags[:5])

    def test_needs_post_peak_samples(self):
        times = np.array([0.0, 1.0, 2.0])
        with pytest.raises(InsufficientDataError):
            SplineHandoffModel().fit(times, np.array([0.0, 1.0, 2.0]))

    def test_used_as_blood_slot(self):
        times, values, flags = handoff_samples()
        meas = Measurement.from_arrays(blood=(times, values), blood_continuous=flags)
        series = meas.raw_series(Quantity.BLOOD)
        fit = SplineHandoffModel(self.config).fit(series.times, series.values, series.weights,
                                                  continuous=series.continuous)
        inp = InputFunction(meas.with_fit(Quantity.BLOOD, fit))
        query = np.linspace(0.0, 70.0, 141)
        np.testing.assert_allclose(inp.resolve(Quantity.BLOOD, query), fit(query))
