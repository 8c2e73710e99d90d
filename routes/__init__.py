"""
Blood Exchange Routes Package
"""

from . import admin, offers, requests, transfers, units

__all__ = ['admin', 'offers', 'requests', 'transfers', 'units']
