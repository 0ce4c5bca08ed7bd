"""HTTP request surface."""
