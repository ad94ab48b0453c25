"""
PharmaChain — Document store boundary (IPFS).
"""
