"""Pure trading logic: risk levels, position sizing and the error hierarchy."""
