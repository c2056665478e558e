"""Domain services: rate limiting, retrieval, completion and streaming."""
