"""Deviation calculation and swap planning."""
from .deviation import DeviationCalculator, exceeds_threshold, max_deviation, requires_action
from .planner import SwapPlanner

__all__ = ["DeviationCalculator", "SwapPlanner", "exceeds_threshold", "max_deviation", "requires_action"]
