"""Zero-knowledge verification primitives for the privacy vault."""
