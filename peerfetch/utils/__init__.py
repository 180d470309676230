"""Utility modules shared across peerfetch."""
from __future__ import annotations
