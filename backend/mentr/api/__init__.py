"""HTTP layer for the Mentr settlement engine."""
