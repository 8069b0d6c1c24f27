"""
resolution - Combining local and remote collection snapshots.

Conflicts are resolved per record: the newer updated_at wins, local
records are never dropped, and likely duplicates are adopted rather
than re-imported.
"""

from hybrid_sync.resolution.merge import MergeEngine, MergeResult

__all__ = ["MergeEngine", "MergeResult"]
