"""
PharmaChain — shared types used by every component.

Components:
    - errors: the error taxonomy and its HTTP status / code mapping
"""
