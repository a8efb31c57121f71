"""Git branch, worktree and merge operations."""
