"""HTTP surface of the orchestration core."""
