"""Liveness / anti-spoofing heuristics over a rolling frame history.

Checks are independent and swappable; the texture classifier in particular is a
black box that can be replaced by a trained model.
"""
