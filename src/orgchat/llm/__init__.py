"""Language-model routing."""
