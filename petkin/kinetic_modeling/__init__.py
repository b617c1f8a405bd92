"""
Compartmental and linearized kinetic models, delay estimation and t* candidate sets.
"""
