"""Command-line front end (``appctl``)."""
