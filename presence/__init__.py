"""In-memory presence synchronization: participant registry, event fan-out and origin lookup."""
