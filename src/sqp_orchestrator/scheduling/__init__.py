"""Reporting windows, ASIN batching and eligibility."""

from .chunker import split_asins_into_chunks
from .periods import PeriodCalculator

__all__ = ["PeriodCalculator", "split_asins_into_chunks"]
