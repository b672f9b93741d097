"""
CardRescue - Photo recovery from failing camera cards

Resumable imaging of a failing device followed by carving with every
available engine.
"""

__version__ = "1.0.0"
