"""Wallet ownership verification and chat admission."""

from .binder import IdentityBinder

__all__ = ["IdentityBinder"]
