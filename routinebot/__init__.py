"""routinebot — personal-automation scheduler for agent routines and reminders."""

__version__ = "0.1.0"
