"""
petkin: blood input function modelling and kinetic modelling of PET time-activity curves.
"""
__version__ = '0.1.0'
