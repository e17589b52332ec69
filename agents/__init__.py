"""Periodic scanners that drive time-based reminder and expiry transitions."""

from .appointments import AppointmentExpirySweep
from .availability import AvailabilityExpirySweep
from .reminders import ReminderSweep, schedule_appointment_reminders
from .sweep import Sweep, SweepResult

__all__ = [
    "AppointmentExpirySweep",
    "AvailabilityExpirySweep",
    "ReminderSweep",
    "Sweep",
    "SweepResult",
    "schedule_appointment_reminders",
]
