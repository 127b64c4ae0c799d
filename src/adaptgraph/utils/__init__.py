"""AdaptGraph · Utilities."""
