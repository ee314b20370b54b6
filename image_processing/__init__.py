"""Image normalization for probe and candidate images."""
