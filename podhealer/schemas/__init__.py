"""
Pod Healer - Schemas
====================
"""

from podhealer.schemas.events import HealEvent

__all__ = ["HealEvent"]
