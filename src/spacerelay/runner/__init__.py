"""Session orchestration and multi-room supervision."""
