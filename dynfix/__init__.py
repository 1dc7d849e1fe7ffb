"""
dynfix: calibrate a trained float network into a dynamic fixed-point network description.
"""

__version__ = "0.1.0"
