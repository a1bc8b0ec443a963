"""Providers wrapping external service managers."""
from __future__ import annotations

from .systemd import UserSystemdProvider

__all__ = ["UserSystemdProvider"]
