"""Attendance-session synchronization engine."""
