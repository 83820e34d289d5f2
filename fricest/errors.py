from __future__ import annotations


class InvalidDimension(ValueError):
    """Matrix/vector shapes handed to the estimator do not agree."""
