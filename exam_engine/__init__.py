"""Exam attempt engine: assignment, checkpoints, timing and scoring of student exam attempts."""

__version__ = "0.1.0"
