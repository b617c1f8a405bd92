"""
Blood measurements, dispersion correction, curve models for the blood-derived quantities and the resolved input
function.
"""
