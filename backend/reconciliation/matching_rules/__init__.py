"""
Matching Rules Module
"""

from .tiered_rules import match, relative_difference, order_transactions
from .suggestion_rules import SuggestionRules, SuggestedMatch, suggestion_rules

__all__ = [
    "match",
    "relative_difference",
    "order_transactions",
    "SuggestionRules",
    "SuggestedMatch",
    "suggestion_rules",
]
