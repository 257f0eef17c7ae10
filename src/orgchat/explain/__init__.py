"""Reply synthesis."""
