"""
Classification and extraction collaborators.

The remote service client lives in services/classifier_client.py and falls
back to the rule-based heuristics defined here.
"""

from inbox_pipeline.classifiers.base import BaseClassifier, BaseExtractor
from inbox_pipeline.classifiers.heuristic import (
    HeuristicClassifier,
    HeuristicExtractor,
    score_card_extraction,
)

__all__ = [
    "BaseClassifier",
    "BaseExtractor",
    "HeuristicClassifier",
    "HeuristicExtractor",
    "score_card_extraction",
]
