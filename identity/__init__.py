"""
PharmaChain — Identity & Access Package.

Components:
    - tokens: JWT issue / verify / revoke / refresh and login challenges
    - revocation: in-memory and SQL-backed revocation sets
    - profile_cache: cache-aside stakeholder profiles with TTL
    - guard: role and verification checks (fail closed)
    - audit: structured security audit events
"""
