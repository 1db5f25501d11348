"""Command-line interface (``spacerelay``)."""
