"""Semester transport fee payments with webhook reconciliation."""
