"""
Matrix Integration Package

matrix-nio backed implementation of the protocol client interface.
"""

from .auth import MatrixAuthHandler
from .client import NioProtocolClient, create_async_client

__all__ = ["MatrixAuthHandler", "NioProtocolClient", "create_async_client"]
