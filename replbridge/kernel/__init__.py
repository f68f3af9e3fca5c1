"""Bundled reference bridge, launched as a script inside the project interpreter."""
