"""HTTP services built on the objdb engine."""
