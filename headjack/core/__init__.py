"""
Core engine: event normalization, state tracking, command routing,
device verification and persistence.
"""
