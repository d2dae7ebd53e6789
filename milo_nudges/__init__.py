"""
Milo Nudges

Data-access layer for Milo's scheduled reminder nudges.
"""

__version__ = "1.0.0"
