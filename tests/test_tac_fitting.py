import json

import numpy as np
import pytest

from conftest import TRUE_1TCM, TRUE_2TCM
from petkin.kinetic_modeling.tac_fitting import (CompartmentModelFitter, FitTCMToTAC, calc_macro_params, fit_1tcm,
                                                 fit_2tcm, fit_2tcm1k, simulate_tac, validated_tcm)
from petkin.multistart import MultistartConfig
from petkin.utils.errors import BoundaryHitWarning, InsufficientDataError, InvalidParameterError
from petkin.utils.time_activity_curve import TimeActivityCurve

OFF_BY_20_PERCENT = {'k1': (0.12, 1e-4, 1.0),
                     'k2': (0.12, 1e-4, 1.0),
                     'k3': (0.06, 1e-4, 1.0),
                     'k4': (0.032, 1e-4, 1.0),
                     'vb': (0.04, 0.0, 0.5)}


@pytest.mark.parametrize('name, expected', [('2TCM', '2tcm'), ('1-tcm', '1tcm'), ('2tcm 1k', '2tcm1k')])
def test_validated_tcm(name, expected):
    assert validated_tcm(name) == expected


def test_validated_tcm_rejects_unknown():
    with pytest.raises(InvalidParameterError):
        validated_tcm('3tcm')


class TestMacroParameters:
    def test_reversible_2tcm(self):
        macro = calc_macro_params('2tcm', TRUE_2TCM)
        assert macro['Vnd'] == pytest.approx(0.1 / 0.15)
        assert macro['Vs'] == pytest.approx(0.1 * 0.05 / (0.15 * 0.04))
        assert macro['Vt'] == pytest.approx(macro['Vnd'] + macro['Vs'])
        assert macro['BPnd'] == pytest.approx(0.05 / 0.04)

    def test_irreversible_2tcm(self):
        macro = calc_macro_params('2tcm', dict(TRUE_2TCM, k4=0.0))
        assert macro['Ki'] == pytest.approx(0.1 * 0.05 / 0.2)
        assert 'Vt' not in macro

    def test_1tcm(self):
        assert calc_macro_params('1tcm', TRUE_1TCM) == {'Vt': pytest.approx(2.0)}


class TestCompartmentModelFitter:
    def test_noiseless_2tcm_recovery(self, tac_2tcm, input_function):
        result = fit_2tcm(tac_2tcm, input_function, fit_bounds=OFF_BY_20_PERCENT, frozen_params={'inpshift': 0.0})
        assert result.converged
        assert not result.boundary_hit
        for name in ('k1', 'k2', 'k3', 'k4', 'vb'):
            assert result.params[name] == pytest.approx(TRUE_2TCM[name], rel=1e-2), name
        assert result.macro_params['Vt'] == pytest.approx(calc_macro_params('2tcm', TRUE_2TCM)['Vt'], rel=1e-3)
        assert result.params['inpshift'] == 0.0
        assert 'inpshift' not in result.param_se
        np.testing.assert_allclose(result.fitted_tac, tac_2tcm.values, rtol=1e-4, atol=1e-6 * tac_2tcm.values.max())

    def test_macro_parameters_are_better_identified(self, tac_2tcm, input_function, rng):
        noisy = TimeActivityCurve(times_in_minutes=tac_2tcm.times_in_minutes,
                                  values=tac_2tcm.values + rng.normal(0.0, 0.02 * tac_2tcm.values.max(),
                                                                      size=len(tac_2tcm)))
        result = fit_2tcm(noisy, input_function, fit_bounds=OFF_BY_20_PERCENT, frozen_params={'inpshift': 0.0})
        assert result.macro_param_se['Vt'] < result.param_se['k3']
        assert result.macro_param_se['Vt'] < result.param_se['k4']

    def test_1tcm_recovery_without_blood(self, tac_1tcm, input_function):
        result = fit_1tcm(tac_1tcm, input_function, frozen_params={'vb': 0.0, 'inpshift': 0.0})
        assert result.params['k1'] == pytest.approx(0.12, rel=1e-3)
        assert result.params['k2'] == pytest.approx(0.06, rel=1e-3)
        assert result.free_params == ('k1', 'k2')
        assert result.macro_params['Vt'] == pytest.approx(2.0, rel=1e-3)

    def test_2tcm1k_recovers_its_own_simulation(self, frame_times, input_function):
        truth = dict(TRUE_2TCM, kb=0.1)
        tac = TimeActivityCurve(times_in_minutes=frame_times,
                                values=simulate_tac('2tcm1k', frame_times, input_function, truth))
        bounds = dict(OFF_BY_20_PERCENT, kb=(0.08, 0.0, 1.0))
        result = fit_2tcm1k(tac, input_function, fit_bounds=bounds, frozen_params={'inpshift': 0.0})
        np.testing.assert_allclose(result.fitted_tac, tac.values, rtol=1e-3, atol=1e-4 * tac.values.max())
        assert result.macro_params['Vt'] == pytest.approx(calc_macro_params('2tcm', truth)['Vt'], rel=5e-2)

    def test_result_keeps_shifted_input(self, tac_1tcm, input_function):
        fitter = CompartmentModelFitter(tac_1tcm, input_function, model='1tcm', frozen_params={'inpshift': 0.2},
                                        resample_num=512)
        result = fitter.run_fit()
        assert result.shifted_input.shape == (3, 512)
        np.testing.assert_allclose(result.shifted_input[0], fitter.resample_times)
        np.testing.assert_allclose(result.residuals, tac_1tcm.values - result.fitted_tac)
        assert result.n_obs == len(tac_1tcm)
        assert np.isfinite(result.aic) and np.isfinite(result.bic)

    def test_boundary_hit_is_warned(self, tac_1tcm, input_function):
        bounds = {'k1': (0.05, 1e-4, 0.08)}
        with pytest.warns(BoundaryHitWarning):
            result = fit_1tcm(tac_1tcm, input_function, fit_bounds=bounds, frozen_params={'inpshift': 0.0})
        assert result.boundary_hit

    def test_multistart(self, tac_1tcm, input_function):
        frozen = {'vb': 0.0, 'inpshift': 0.0}
        config = MultistartConfig(iterations=6, seed=5, start_lo=[0.05, 0.02], start_hi=[0.3, 0.2])
        first = fit_1tcm(tac_1tcm, input_function, frozen_params=frozen, multistart=config)
        second = fit_1tcm(tac_1tcm, input_function, frozen_params=frozen, multistart=config)
        assert first.multistart is not None
        np.testing.assert_array_equal([first.params[p] for p in first.free_params],
                                      [second.params[p] for p in second.free_params])
        assert first.params['k1'] == pytest.approx(0.12, rel=1e-3)

    def test_array_bounds(self, tac_1tcm, input_function):
        bounds = np.array([[0.1, 1e-4, 1.0], [0.1, 1e-4, 1.0], [0.05, 0.0, 0.5], [0.0, -1.0, 1.0]])
        fitter = CompartmentModelFitter(tac_1tcm, input_function, model='1tcm', fit_bounds=bounds)
        assert fitter.bounds['inpshift'] == (0.0, -1.0, 1.0)
        with pytest.raises(InvalidParameterError):
            CompartmentModelFitter(tac_1tcm, input_function, model='1tcm', fit_bounds=bounds[:3])

    @pytest.mark.parametrize('kwargs', [dict(frozen_params={'k5': 0.1}),
                                        dict(fit_bounds={'k1': (2.0, 0.0, 1.0)}),
                                        dict(fit_bounds={'k3': (0.1, 0.0, 1.0)}),
                                        dict(resample_num=4)])
    def test_invalid_configuration(self, tac_1tcm, input_function, kwargs):
        with pytest.raises(InvalidParameterError):
            CompartmentModelFitter(tac_1tcm, input_function, model='1tcm', **kwargs)

    def test_too_few_frames(self, tac_2tcm, input_function):
        with pytest.raises(InsufficientDataError):
            fit_2tcm(tac_2tcm, input_function, frame_window=(0, 3))


class TestFitTCMToTAC:
    def test_writes_properties(self, tmp_path, aif_times, input_function, tac_1tcm):
        input_path = tmp_path / 'input.txt'
        roi_path = tmp_path / 'roi.txt'
        aif = input_function.resolve('aif', aif_times)
        np.savetxt(input_path, np.column_stack([aif_times, aif, input_function.resolve('blood', aif_times)]))
        np.savetxt(roi_path, np.column_stack([tac_1tcm.times_in_minutes, tac_1tcm.values]))

        analysis = FitTCMToTAC(input_tac_path=str(input_path), roi_tac_path=str(roi_path),
                               output_directory=str(tmp_path / 'out'), output_filename_prefix='sub-001',
                               compartment_model='1TCM', frozen_params={'inpshift': 0.0, 'vb': 0.0})
        with pytest.raises(RuntimeError):
            analysis.save_analysis()
        analysis.run_analysis()
        props_path = analysis.save_analysis()

        assert props_path.endswith('sub-001_analysis-1tcm_props.json')
        with open(props_path) as f:
            props = json.load(f)
        assert props['TissueCompartmentModel'] == '1tcm'
        assert props['FitProperties']['FitValues']['k1'] == pytest.approx(0.12, rel=1e-3)
        assert props['FrozenParameters'] == {'inpshift': 0.0, 'vb': 0.0}
        assert props['FitProperties']['Converged']
