"""
API Layer

RESPONSIBILITY: HTTP access to the MomentsEngine
"""

from .server import app, create_app

__all__ = ['app', 'create_app']
