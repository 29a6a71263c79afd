"""Offline plots of runs."""
