"""
AI Memory - durable memory bank and budgeted context retrieval.

Stores decisions, context, progress, patterns and briefs written by a coding
assistant, and picks the subset most worth including in the next model call
under a token budget.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
