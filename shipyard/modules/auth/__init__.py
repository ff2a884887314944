"""
Auth Module - Black Box Interface

Purpose: Authenticate API callers
Interface: AuthModule.authenticate(), AuthModule.verify_api_key()
Hidden: Key format, comparison, audit logging
"""

from .auth import AuthModule, AuthResult

__all__ = ["AuthModule", "AuthResult"]
