"""modsync web service."""
