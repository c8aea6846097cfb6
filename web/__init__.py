"""
HTTP transport module.
"""

from .api_server import ApiServer

__all__ = ['ApiServer']
