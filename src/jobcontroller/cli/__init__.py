"""Command-line interface (``jobcontroller``)."""
