"""
Courier Ingestion Module
========================

Conditional feed fetching and per-item normalization:
- URL canonicalization
- HTML to bounded plain text
- Content fingerprints
"""
