"""
Advisory sources

- base/: Common infrastructure shared by every corpus (models, normalizer, resolver, upserter)
- cvelist/: The CVE list git repository
"""
