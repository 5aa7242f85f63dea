"""Gateway process orchestration."""

from .gateway import Gateway

__all__ = ["Gateway"]
