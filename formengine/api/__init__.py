"""HTTP surface for the form evaluation engine."""
