"""CLI command modules."""

from .flows import canvas, labels, simulate, template, validate

__all__ = [
    "canvas",
    "labels",
    "simulate",
    "template",
    "validate",
]
