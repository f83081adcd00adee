"""Command-line entry points: registrar administration and the node reporter."""
