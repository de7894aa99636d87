"""
Outprep Tuner

Closed-loop configuration tuning for the Outprep move-selection bot:
gather player datasets, sweep one-at-a-time parameter variants, analyze the
results against previous cycles, and gate the resulting proposal behind
human review.
"""

__version__ = "0.1.0"
