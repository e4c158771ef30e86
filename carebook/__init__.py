"""Carebook - Therapy appointment lifecycle and session balance engine"""

__version__ = "1.0.0"
