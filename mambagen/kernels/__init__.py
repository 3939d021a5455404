"""Numeric kernels used by the mambagen model."""

from mambagen.kernels import scan

__all__ = ["scan"]
