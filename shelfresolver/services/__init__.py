"""
ShelfResolver services.

Fingerprinting, merge rules, matching, AI enrichment and the shelf
pipeline. Import from the submodules directly; provider adapters depend on
the pure helpers here, so this package does not re-export the
higher-level services.
"""
