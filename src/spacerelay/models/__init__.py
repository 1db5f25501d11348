"""Domain models for rooms, capture sessions and audio chunks."""
