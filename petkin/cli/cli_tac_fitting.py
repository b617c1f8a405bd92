import logging
from typing import Union

import numpy as np
import argparse
from ..kinetic_modeling import tac_fitting as pet_fit
from ..multistart import MultistartConfig

_EXAMPLE_ = ('Fitting a TAC to the serial 2TCM:\n\t'
             'petkin-tac-fitting -i "input_tac.txt"'
             ' -r "2tcm_tac.txt" '
             '-m "2tcm" '
             '-o "./" -p "cli_" '
             '-g 0.1 0.1 0.1 0.1 0.05 0.0 '
             '-l 0.0 0.0 0.0 0.0 0.0 -1.0 '
             '-u 5.0 5.0 5.0 5.0 0.5 1.0 '
             '-f 1000 -n 512 '
             '--print\n'
             'Estimating the delay on the first 20 frames with 50 multi-start attempts:\n\t'
             'petkin-tac-fitting -i "input_tac.txt" -r "wb_tac.txt" -m "1tcm" -o "./" -p "delay_" '
             '--frame-window 0 20 --multistart-iterations 50 --seed 42')


def _generate_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='petkin-tac-fitting',
                                     description='Command line interface for fitting Tissue Compartment Models (TCM) '
                                                 'to PET Time Activity Curves (TACs).',
                                     formatter_class=argparse.RawTextHelpFormatter,
                                     epilog=_EXAMPLE_)

    # IO group
    grp_io = parser.add_argument_group('IO Paths and Prefixes')
    grp_io.add_argument("-i", "--input-tac-path", required=True,
                        help="Path to the input function file: time, AIF and, optionally, whole blood.")
    grp_io.add_argument("-r", "--roi-tac-path", required=True,
                        help="Path to the ROI TAC file: time, activity and, optionally, frame weights.")
    grp_io.add_argument("-o", "--output-directory", required=True, help="Path to the output directory.")
    grp_io.add_argument("-p", "--output-filename-prefix", required=True, help="Prefix for the output filenames.")

    # Analysis group
    grp_analysis = parser.add_argument_group('Analysis Parameters')
    grp_analysis.add_argument("-m", "--model", required=True, choices=list(pet_fit.MODEL_PARAMS),
                              help="Compartment model to be fit.")
    grp_analysis.add_argument("-g", "--initial-guesses", required=False, nargs='+', type=float,
                              help="Initial guesses for each fitting parameter, in the order "
                                   "k1 k2 [k3 k4] vb [kb] inpshift.")
    grp_analysis.add_argument("-l", "--lower-bounds", required=False, nargs='+', type=float,
                              help="Lower bounds for each fitting parameter.")
    grp_analysis.add_argument("-u", "--upper-bounds", required=False, nargs='+', type=float,
                              help="Upper bounds for each fitting parameter.")
    grp_analysis.add_argument("-f", "--max-fit-iterations", required=False, default=2500, type=int,
                              help="Maximum number of function iterations")
    grp_analysis.add_argument("-n", "--resample-num", required=False, default=2048, type=int,
                              help="Number of samples of the convolution grid.")
    grp_analysis.add_argument("-b", "--ignore-blood-volume", required=False, default=False, action='store_true',
                              help="Whether to ignore any blood volume contributions while fitting")
    grp_analysis.add_argument("--inpshift", required=False, default=None, type=float,
                              help="Hold the input function delay fixed at this value in minutes.")
    grp_analysis.add_argument("--frame-window", required=False, default=None, nargs=2, type=int,
                              metavar=('START', 'END'), help="Fit only frames [START, END).")

    # Multi-start group
    grp_multistart = parser.add_argument_group('Multi-start Optimization')
    grp_multistart.add_argument("--multistart-iterations", required=False, default=None, type=int,
                                help="Number of randomly started fits. Single fit from the initial guesses if unset.")
    grp_multistart.add_argument("--seed", required=False, default=None, type=int,
                                help="Seed of the multi-start starting points.")

    # Printing arguments
    grp_verbose = parser.add_argument_group('Additional Options')
    grp_verbose.add_argument("--print", action="store_true", help="Whether to print the analysis results.")
    grp_verbose.add_argument("-v", "--verbose", action="store_true", help="Log progress information.")

    return parser.parse_args()


def _generate_bounds(initial: list, lower: list, upper: list) -> Union[np.ndarray, None]:
    if initial is not None:
        return np.asarray(np.asarray([initial, lower, upper]).T)
    else:
        return None


def _generate_frozen_params(inpshift: Union[float, None], ignore_blood_volume: bool) -> dict:
    frozen = {}
    if inpshift is not None:
        frozen['inpshift'] = inpshift
    if ignore_blood_volume:
        frozen['vb'] = 0.0
    return frozen


def main():
    args = _generate_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format='%(asctime)s %(name)s %(levelname)s: %(message)s')

    bounds = _generate_bounds(initial=args.initial_guesses, lower=args.lower_bounds, upper=args.upper_bounds)
    multistart = None
    if args.multistart_iterations is not None:
        multistart = MultistartConfig(iterations=args.multistart_iterations, seed=args.seed)

    tac_fitting = pet_fit.FitTCMToTAC(input_tac_path=args.input_tac_path,
                                      roi_tac_path=args.roi_tac_path,
                                      output_directory=args.output_directory,
                                      output_filename_prefix=args.output_filename_prefix,
                                      compartment_model=args.model,
                                      parameter_bounds=bounds,
                                      frozen_params=_generate_frozen_params(args.inpshift, args.ignore_blood_volume),
                                      frame_window=args.frame_window,
                                      multistart=multistart,
                                      resample_num=args.resample_num,
                                      max_func_iters=args.max_fit_iterations)
    tac_fitting.run_analysis()
    tac_fitting.save_analysis()

    if args.print:
        title_str = f"{'Param':<8} {'FitVal':<8}    {'%Err':>8}|"
        print("-" * len(title_str))
        print(title_str)
        print("-" * len(title_str))
        vals = tac_fitting.analysis_props["FitProperties"]["FitValues"]
        errs = tac_fitting.analysis_props["FitProperties"]["FitStdErrRelative"]
        for param_name, val in vals.items():
            err = errs.get(param_name)
            err_str = 'fixed' if err is None else f"{err * 100:>7.2f}%"
            print(f"{param_name:<8} {val:<8.4f}    {err_str:>8}|")
        macro_vals = tac_fitting.analysis_props["FitProperties"]["MacroParameters"]
        macro_errs = tac_fitting.analysis_props["FitProperties"]["MacroStdErrRelative"]
        for param_name, val in macro_vals.items():
            print(f"{param_name:<8} {val:<8.4f}    {macro_errs[param_name] * 100:>7.2f}%|")
        print("-" * len(title_str))


if __name__ == "__main__":
    main()
