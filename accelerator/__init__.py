"""Chat accelerator backend."""
