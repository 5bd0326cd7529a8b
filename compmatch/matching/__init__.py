"""Name normalization, similarity scoring, candidate building and match lifecycle."""
