"""Continuous verification state machine and its per-session state."""
