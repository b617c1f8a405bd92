r"""
This module contains a collection of functions to compute Time-Activity Curves (TACs) for the Tissue Compartment
Models (TCMs) fit in :mod:`petkin.kinetic_modeling.tac_fitting`: the 1TCM, the serial 2TCM and the 2TCM1k, a 2TCM
with irreversible trapping of tracer from the blood in the vascular endothelium.

The tissue concentration is the convolution of the plasma input function with the model's impulse response. The
measured TAC also contains the blood in the vasculature of the region:

.. math::

    C_\mathrm{PET}(t) = (1 - v_B)\,(C_P\otimes h)(t) + v_B\,C_B(t)

and for the 2TCM1k an extra endothelial term :math:`v_B k_b\int_0^t C_P(s)\mathrm{d}s`.

Note:
    All response functions in this module are decorated with :func:`numba.njit`. The convolutions require the input
    function sampled on an evenly spaced grid starting at :math:`t=0`.

Requires:
    The module relies on the :doc:`numpy <numpy:index>` and :doc:`numba <numba:index>` modules.

"""
import numba
import numpy as np

from ..utils.errors import InvalidParameterError


def calc_convolution_with_check(f: np.ndarray, g: np.ndarray, dt: float) -> np.ndarray:
    r"""Performs a discrete convolution of two arrays, assumed to represent time-series data. Checks if the arrays are
    of the same shape.

    Let ``f``:math:`=f(t)` and ``g``:math:`=g(t)` where both functions are 0 for :math:`t<0`. Then,
    the output, :math:`h(t)`, is

    .. math::

        h(t) = \int_{0}^{t}f(s)g(t-s)\mathrm{d}s

    Args:
        f (np.ndarray): Array containing the values for the input function.
        g (np.ndarray): Array containing values for the response function.
        dt (float): The step-size, in the time-domain, between samples for ``f`` and ``g``.

    Returns:
        (np.ndarray): Convolution of the two arrays scaled by ``dt``.

    Raises:
        InvalidParameterError: If the arrays have different lengths.
    """
    if len(f) != len(g):
        raise InvalidParameterError(f"The provided arrays must have the same lengths! f:{len(f):<6} and g:{len(g):<6}.")
    vals = np.convolve(f, g, mode='full')
    return vals[:len(f)] * dt


def check_uniform_grid(times: np.ndarray) -> float:
    """
    Checks that ``times`` starts at zero and is evenly spaced, and returns the step.

    Raises:
        InvalidParameterError: If the grid is not evenly spaced from zero.
    """
    times = np.asarray(times, float)
    if len(times) < 2:
        raise InvalidParameterError("The time grid needs at least two points.")
    dt = times[1] - times[0]
    if dt <= 0 or abs(times[0]) > 1e-8 * dt or not np.allclose(np.diff(times), dt, rtol=1e-6, atol=0.0):
        raise InvalidParameterError("The input function must be sampled on an evenly spaced grid starting at t=0.")
    return float(dt)


@numba.njit()
def response_function_1tcm_c1(t: np.ndarray, k1: float, k2: float) -> np.ndarray:
    r"""The response function for the 1TCM :math:`f(t)=k_1 e^{-k_{2}t}`

    Args:
        t (np.ndarray): Array containing time-points where :math:`t\geq0`.
        k1 (float): Rate constant for transport from plasma/blood to tissue compartment.
        k2 (float): Rate constant for transport from tissue compartment back to plasma/blood.

    Returns:
        (np.ndarray): Array containing response function values given the constants.
    """
    return k1 * np.exp(-k2 * t)


@numba.njit()
def response_function_serial_2tcm_c1(t: np.ndarray, k1: float, k2: float, k3: float, k4: float) -> np.ndarray:
    r"""The response function for first compartment in the *serial* 2TCM.

    .. math::

        f(t) = \frac{k_{1}}{\Delta \alpha} \left[ (k_{4}-\alpha_{1})e^{-\alpha_{1}t} + (\alpha_{2}-k_{4})e^{-\alpha_{2}t}\right]

    where

    .. math::

        a&= k_{2}+k_{3}+k_{4}\\
        \alpha_{1}&=\frac{a-\sqrt{a^{2}-4k_{2}k_{4}}}{2}\\
        \alpha_{2}&=\frac{a+\sqrt{a^{2}-4k_{2}k_{4}}}{2}\\
        \Delta \alpha&=\alpha_2 - \alpha_1

    The expression reduces to :math:`k_1e^{-(k_2+k_3)t}` for :math:`k_4=0`.

    Args:
        t (np.ndarray): Array containing time-points where :math:`t\geq0`.
        k1 (float): Rate constant for transport from plasma/blood to tissue compartment.
        k2 (float): Rate constant for transport from first tissue compartment back to plasma/blood.
        k3 (float): Rate constant for transport from first tissue compartment to second tissue compartment.
        k4 (float): Rate constant for transport from second tissue compartment back to first tissue compartment.

    Returns:
        (np.ndarray): Array containing response function values for first compartment given the constants.

    See Also:
        :func:`response_function_serial_2tcm_c2`
    """
    a = k2 + k3 + k4
    alpha_1 = (a - np.sqrt((a ** 2.) - 4.0 * k2 * k4)) / 2.0
    alpha_2 = (a + np.sqrt((a ** 2.) - 4.0 * k2 * k4)) / 2.0
    delta_a = alpha_2 - alpha_1

    return (k1 / delta_a) * ((k4 - alpha_1) * np.exp(-alpha_1 * t) + (alpha_2 - k4) * np.exp(-alpha_2 * t))


@numba.njit()
def response_function_serial_2tcm_c2(t: np.ndarray, k1: float, k2: float, k3: float, k4: float) -> np.ndarray:
    r"""The response function for second compartment in the *serial* 2TCM.

    .. math::

        f(t) = \frac{k_{1}k_{3}}{\Delta \alpha} \left[ e^{-\alpha_{1}t} - e^{-\alpha_{2}t}\right]

    with :math:`\alpha_{1,2}` and :math:`\Delta\alpha` as in :func:`response_function_serial_2tcm_c1`.

    Args:
        t (np.ndarray): Array containing time-points where :math:`t\geq0`.
        k1 (float): Rate constant for transport from plasma/blood to tissue compartment.
        k2 (float): Rate constant for transport from first tissue compartment back to plasma/blood.
        k3 (float): Rate constant for transport from first tissue compartment to second tissue compartment.
        k4 (float): Rate constant for transport from second tissue compartment back to first tissue compartment.

    Returns:
        (np.ndarray): Array containing response function values for second compartment given the constants.
    """
    a = k2 + k3 + k4
    alpha_1 = (a - np.sqrt((a ** 2.) - 4.0 * k2 * k4)) / 2.0
    alpha_2 = (a + np.sqrt((a ** 2.) - 4.0 * k2 * k4)) / 2.0
    delta_a = alpha_2 - alpha_1

    return (k1 * k3 / delta_a) * (np.exp(-alpha_1 * t) - np.exp(-alpha_2 * t))


def generate_tac_1tcm_c1_from_tac(tac_times: np.ndarray,
                                  tac_vals: np.ndarray,
                                  k1: float,
                                  k2: float) -> np.ndarray:
    r"""Calculate the tissue TAC, given the input TAC, for a 1TCM as an explicit convolution.

    Args:
        tac_times (np.ndarray): Array containing time-points where :math:`t\geq0` and equal time-steps.
        tac_vals (np.ndarray): Array containing the plasma input activities.
        k1 (float): Rate constant for transport from plasma/blood to tissue compartment.
        k2 (float): Rate constant for transport from tissue compartment back to plasma/blood.

    Returns:
        (np.ndarray): Array ``[times, tissue]``.
    """
    dt = check_uniform_grid(tac_times)
    impulse = response_function_1tcm_c1(t=tac_times, k1=k1, k2=k2)
    return np.asarray([tac_times, calc_convolution_with_check(f=tac_vals, g=impulse, dt=dt)])


def generate_tac_serial_2tcm_cpet_from_tac(tac_times: np.ndarray,
                                           tac_vals: np.ndarray,
                                           k1: float,
                                           k2: float,
                                           k3: float,
                                           k4: float) -> np.ndarray:
    r"""
    Calculate the total tissue TAC (both compartments), given the input TAC, for a serial 2TCM as an explicit
    convolution.

    Args:
        tac_times (np.ndarray): Array containing time-points where :math:`t\geq0` and equal time-steps.
        tac_vals (np.ndarray): Array containing the plasma input activities.
        k1 (float): Rate constant for transport from plasma/blood to tissue compartment.
        k2 (float): Rate constant for transport from first tissue compartment back to plasma/blood.
        k3 (float): Rate constant for transport from first tissue compartment to second tissue compartment.
        k4 (float): Rate constant for transport from second tissue compartment back to first tissue compartment.

    Returns:
        (np.ndarray): Array ``[times, tissue]``.
    """
    dt = check_uniform_grid(tac_times)
    impulse = (response_function_serial_2tcm_c1(t=tac_times, k1=k1, k2=k2, k3=k3, k4=k4) +
               response_function_serial_2tcm_c2(t=tac_times, k1=k1, k2=k2, k3=k3, k4=k4))
    return np.asarray([tac_times, calc_convolution_with_check(f=tac_vals, g=impulse, dt=dt)])


def add_blood_volume(tissue_vals: np.ndarray, blood_vals: np.ndarray, vb: float) -> np.ndarray:
    r"""Mixes tissue and whole-blood activity: :math:`(1-v_B)C_T + v_BC_B`."""
    return (1.0 - vb) * tissue_vals + vb * blood_vals


def calc_1tcm_tac(tac_times: np.ndarray,
                  plasma_vals: np.ndarray,
                  blood_vals: np.ndarray,
                  k1: float,
                  k2: float,
                  vb: float = 0.0) -> np.ndarray:
    """PET TAC of the 1TCM on the grid ``tac_times``, including the vascular blood fraction ``vb``."""
    tissue = generate_tac_1tcm_c1_from_tac(tac_times=tac_times, tac_vals=plasma_vals, k1=k1, k2=k2)[1]
    return add_blood_volume(tissue, blood_vals, vb)


def calc_2tcm_tac(tac_times: np.ndarray,
                  plasma_vals: np.ndarray,
                  blood_vals: np.ndarray,
                  k1: float,
                  k2: float,
                  k3: float,
                  k4: float,
                  vb: float = 0.0) -> np.ndarray:
    """PET TAC of the serial 2TCM on the grid ``tac_times``, including the vascular blood fraction ``vb``."""
    tissue = generate_tac_serial_2tcm_cpet_from_tac(tac_times=tac_times, tac_vals=plasma_vals,
                                                    k1=k1, k2=k2, k3=k3, k4=k4)[1]
    return add_blood_volume(tissue, blood_vals, vb)


def calc_2tcm1k_tac(tac_times: np.ndarray,
                    plasma_vals: np.ndarray,
                    blood_vals: np.ndarray,
                    k1: float,
                    k2: float,
                    k3: float,
                    k4: float,
                    vb: float = 0.0,
                    kb: float = 0.0) -> np.ndarray:
    r"""
    PET TAC of the 2TCM1k on the grid ``tac_times``.

    The vascular compartment irreversibly traps plasma tracer at rate :math:`k_b`, adding
    :math:`v_Bk_b\int_0^tC_P(s)\mathrm{d}s` to the serial 2TCM.

    Args:
        tac_times (np.ndarray): Evenly spaced grid starting at zero.
        plasma_vals (np.ndarray): Metabolite-corrected plasma activity on the grid.
        blood_vals (np.ndarray): Whole-blood activity on the grid.
        k1 (float): Rate constant for transport from plasma to the first tissue compartment.
        k2 (float): Rate constant from the first tissue compartment back to plasma.
        k3 (float): Rate constant from the first to the second tissue compartment.
        k4 (float): Rate constant from the second tissue compartment back to the first.
        vb (float): Vascular blood fraction.
        kb (float): Endothelial trapping rate.

    Returns:
        np.ndarray: PET activity on the grid.
    """
    dt = check_uniform_grid(tac_times)
    trapped = np.zeros_like(plasma_vals)
    trapped[1:] = np.cumsum((plasma_vals[1:] + plasma_vals[:-1]) * dt / 2.0)
    pet = calc_2tcm_tac(tac_times=tac_times, plasma_vals=plasma_vals, blood_vals=blood_vals, k1=k1, k2=k2, k3=k3,
                        k4=k4, vb=vb)
    return pet + vb * kb * trapped
