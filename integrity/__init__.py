"""
PharmaChain — Integrity & QR Verification Package.

Components:
    - fingerprint: SHA-256 digests over ordered field subsets
    - payload: QR payload construction, parsing and verification
    - render: scannable PNG / SVG QR images
"""
