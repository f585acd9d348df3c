"""Upload-and-export HTTP service for VIAC statements."""
