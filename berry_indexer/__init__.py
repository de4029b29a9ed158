"""
Berry Indexer

Reconciles Nouns token, auction, governance and client-reward events into
a relational store and evaluates reward-cycle eligibility on top of it.
"""

__version__ = "1.0.0"
