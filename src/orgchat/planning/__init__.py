"""Intent resolution and query synthesis."""
