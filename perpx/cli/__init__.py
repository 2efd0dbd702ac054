"""PerpX command-line interface."""
