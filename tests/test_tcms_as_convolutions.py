import numpy as np
import pytest

from petkin.kinetic_modeling import tcms_as_convolutions as pet_tcms
from petkin.utils.errors import InvalidParameterError

GRID = np.linspace(0.0, 20.0, 8001)


def test_1tcm_step_response():
    tissue = pet_tcms.generate_tac_1tcm_c1_from_tac(GRID, np.ones_like(GRID), k1=0.2, k2=0.1)[1]
    np.testing.assert_allclose(tissue, 2.0 * (1.0 - np.exp(-0.1 * GRID)), atol=2e-3)


def test_2tcm_with_k3_zero_matches_1tcm():
    plasma = GRID * np.exp(-GRID)
    one = pet_tcms.calc_1tcm_tac(GRID, plasma, plasma, k1=0.3, k2=0.2)
    two = pet_tcms.calc_2tcm_tac(GRID, plasma, plasma, k1=0.3, k2=0.2, k3=0.0, k4=0.1)
    np.testing.assert_allclose(two, one, atol=1e-10)


def test_2tcm_steady_state_volume():
    tissue = pet_tcms.calc_2tcm_tac(GRID * 50.0, np.ones_like(GRID), np.ones_like(GRID), k1=0.1, k2=0.15, k3=0.05,
                                    k4=0.04)
    vt = 0.1 / 0.15 * (1.0 + 0.05 / 0.04)
    assert tissue[-1] == pytest.approx(vt, rel=1e-2)


def test_blood_volume_mixing():
    np.testing.assert_allclose(pet_tcms.add_blood_volume(np.full(3, 10.0), np.full(3, 20.0), vb=0.1), 11.0)


def test_2tcm1k_adds_trapped_plasma():
    plasma = np.ones_like(GRID)
    base = pet_tcms.calc_2tcm1k_tac(GRID, plasma, plasma, k1=0.1, k2=0.15, k3=0.05, k4=0.04, vb=0.05, kb=0.0)
    trapped = pet_tcms.calc_2tcm1k_tac(GRID, plasma, plasma, k1=0.1, k2=0.15, k3=0.05, k4=0.04, vb=0.05, kb=0.2)
    np.testing.assert_allclose(base, pet_tcms.calc_2tcm_tac(GRID, plasma, plasma, 0.1, 0.15, 0.05, 0.04, 0.05))
    np.testing.assert_allclose(trapped - base, 0.05 * 0.2 * GRID, atol=1e-10)


def test_rejects_uneven_grid():
    with pytest.raises(InvalidParameterError):
        pet_tcms.calc_1tcm_tac(np.array([0.0, 1.0, 3.0]), np.ones(3), np.ones(3), k1=0.1, k2=0.1)
    with pytest.raises(InvalidParameterError):
        pet_tcms.calc_convolution_with_check(np.ones(3), np.ones(4), dt=1.0)
