"""
Database Models
"""

from app.models.creator import Creator
from app.models.routine import Routine, CreatorRoutine
from app.models.routine_checkout import RoutineCheckout, ReservationStatus
from app.models.routine_cart_stats import RoutineCartStats

__all__ = [
    "Creator",
    "Routine",
    "CreatorRoutine",
    "RoutineCheckout",
    "ReservationStatus",
    "RoutineCartStats",
]
