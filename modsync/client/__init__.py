"""Remote installation client."""
