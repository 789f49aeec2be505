"""Structured events shared by all turn-loop components."""
