"""
Decision module - Goal to tool-invocation pipeline
"""

from .pipeline import DecisionPipeline, IntentClassifier, extract_entities, extract_constraints

__all__ = ["DecisionPipeline", "IntentClassifier", "extract_entities", "extract_constraints"]
