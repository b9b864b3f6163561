"""tradesync.reconstruction

Fill-to-trade reconstruction.
"""

from .matcher import MatchResult, PositionMatcher, ReconstructionResult

__all__ = ["MatchResult", "PositionMatcher", "ReconstructionResult"]
