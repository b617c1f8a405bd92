from setuptools import setup, find_packages

setup(name='petkin', version='0.1.0', packages=find_packages(exclude=['tests', 'tests.*']),
      install_requires=['numpy', 'scipy', 'numba', 'pandas'],
      extras_require={'test': ['pytest']},
      entry_points={'console_scripts': ['petkin-tac-fitting = petkin.cli.cli_tac_fitting:main'], }, )
