"""Application services of the exit lifecycle."""
