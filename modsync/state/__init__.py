"""Desired-state documents and the store that persists them."""
