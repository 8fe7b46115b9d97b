"""
Operation pipeline for collforge.

The executor itself lives in pipeline.executor and is imported by the
engine; this package exports the values hooks work with.
"""

from .context import OperationContext, OperationKind
from .hooks import HookArgs, Skip
from .query import FindOptions, and_where

__all__ = ["OperationContext", "OperationKind", "HookArgs", "Skip", "FindOptions", "and_where"]
