"""Repository adapters: git diffs and static-analysis findings on disk."""
