"""Content-addressable staging cache."""
