"""Command-line entry points (``datalab-inference``, ``datalab-list-images``)."""
