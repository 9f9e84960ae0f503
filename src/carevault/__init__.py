"""
CareVault - credential and session backend for hospital staff and patients.
"""

__version__ = "0.1.0"
