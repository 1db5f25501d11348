"""Session metadata snapshots on local disk."""
